# FILE: atp/identity.py
from __future__ import annotations

"""
Resource identity and resource-level predicates.

Identity priority:
  1. host-metric identity (cpu core, process pid, device, mountpoint, ...)
  2. service identity (service.instance.id, else service.namespace/service.name)
  3. sorted "k=v" concatenation of every attribute, capped at 512 chars
"""

from typing import Any, Iterable, Mapping, Optional

ATTR_HOST_NAME = "host.name"
ATTR_PROCESS_PID = "process.pid"
ATTR_PROCESS_COMMAND = "process.command"
ATTR_PROCESS_STATE = "process.state"
ATTR_EXECUTABLE_NAME = "process.executable.name"
ATTR_EXECUTABLE_PATH = "process.executable.path"

TYPE_CPU = "cpu"
TYPE_DISK = "disk"
TYPE_FILESYSTEM = "filesystem"
TYPE_LOAD = "load"
TYPE_MEMORY = "memory"
TYPE_NETWORK = "network"
TYPE_PROCESS = "process"
TYPE_PROCESSES = "processes"
TYPE_PAGING = "paging"
TYPE_SYSTEM = "system"

MAX_FALLBACK_IDENTITY = 512

_DISK_DIRECTIONS = frozenset({"read", "write"})
_NETWORK_DIRECTIONS = frozenset({"receive", "transmit"})
_PAGING_DIRECTIONS = frozenset({"page_in", "page_out"})
_FS_STATES = frozenset({"free", "reserved", "used"})
_MEMORY_STATES = frozenset(
    {"buffered", "cached", "inactive", "free", "slab_reclaimable", "slab_unreclaimable", "used"}
)
_PAGING_STATES = frozenset({"cached", "free", "used"})
_PAGING_TYPES = frozenset({"major", "minor"})
_PROCESS_STATUSES = frozenset(
    {
        "blocked", "daemon", "detached", "idle", "locked", "orphan", "paging",
        "running", "sleeping", "stopped", "system", "unknown", "zombies",
    }
)
_DEFUNCT_STATES = frozenset({"z", "zombie", "defunct"})


def _as_str(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return str(v)


def _str_attr(attrs: Mapping[str, Any], key: str) -> Optional[str]:
    v = attrs.get(key)
    return v if isinstance(v, str) else None


def resource_type(attrs: Mapping[str, Any]) -> Optional[str]:
    """Classify a host-metrics resource, or None when it is not one."""
    state = _str_attr(attrs, "state")
    direction = _str_attr(attrs, "direction")
    device = _str_attr(attrs, "device")

    if "cpu" in attrs:
        return TYPE_CPU

    if device is not None and direction in _DISK_DIRECTIONS:
        return TYPE_DISK

    if "mountpoint" in attrs:
        return TYPE_FILESYSTEM
    if "type" in attrs and state in _FS_STATES:
        return TYPE_FILESYSTEM

    if state in _MEMORY_STATES:
        return TYPE_MEMORY

    if "device" in attrs:
        if direction in _NETWORK_DIRECTIONS or "protocol" in attrs or state is not None:
            return TYPE_NETWORK
    if "protocol" in attrs and state is not None:
        return TYPE_NETWORK

    if direction in _PAGING_DIRECTIONS:
        return TYPE_PAGING
    if state in _PAGING_STATES and "device" in attrs:
        return TYPE_PAGING
    if _str_attr(attrs, "type") in _PAGING_TYPES:
        return TYPE_PAGING

    # pid before status: per-process metrics vs system-wide process counts
    if ATTR_PROCESS_PID in attrs:
        return TYPE_PROCESS

    if _str_attr(attrs, "status") in _PROCESS_STATUSES:
        return TYPE_PROCESSES

    if device is not None and not any(
        k in attrs for k in ("direction", "mountpoint", "protocol", "state", "type")
    ):
        return TYPE_DISK

    if ATTR_HOST_NAME in attrs:
        return TYPE_SYSTEM

    return None


def _at_host(name: str, host: str) -> str:
    return f"{name}@{host}" if host else name


def _host_metric_identity(attrs: Mapping[str, Any], host: str) -> str:
    kind = resource_type(attrs)
    if kind is None:
        return ""

    if kind == TYPE_CPU:
        return _at_host(f"cpu.{_as_str(attrs.get('cpu'))}", host)

    if kind == TYPE_PROCESS:
        pid = _as_str(attrs.get(ATTR_PROCESS_PID))
        if not pid:
            pid = _as_str(attrs.get(ATTR_PROCESS_COMMAND))
        return _at_host(f"process.{pid or 'unknown'}", host)

    if kind in (TYPE_DISK, TYPE_NETWORK):
        device = _as_str(attrs.get("device"))
        return _at_host(f"{kind}.{device}" if device else kind, host)

    if kind == TYPE_FILESYSTEM:
        ident = _as_str(attrs.get("mountpoint")) or _as_str(attrs.get("device")) or "unknown"
        return _at_host(f"filesystem.{ident}", host)

    if kind == TYPE_PAGING:
        if "device" in attrs:
            return _at_host(f"paging.{_as_str(attrs.get('device'))}", host)
        return _at_host("paging", host)

    return _at_host(kind, host)


def _service_identity(attrs: Mapping[str, Any]) -> str:
    if "service.instance.id" in attrs:
        return "service.instance.id:" + _as_str(attrs["service.instance.id"])
    if "service.name" in attrs:
        name = _as_str(attrs["service.name"])
        namespace = _as_str(attrs.get("service.namespace"))
        if namespace:
            return f"service:{namespace}/{name}"
        return f"service:{name}"
    return ""


def _fallback_identity(attrs: Mapping[str, Any]) -> str:
    if not attrs:
        return "resource:empty"
    ident = ",".join(f"{k}={_as_str(attrs[k])}" for k in sorted(attrs))
    return ident[:MAX_FALLBACK_IDENTITY]


def build_identity(attrs: Mapping[str, Any]) -> str:
    """Stable identity for a resource, derived only from its attributes."""
    host = _as_str(attrs.get(ATTR_HOST_NAME))
    return (
        _host_metric_identity(attrs, host)
        or _service_identity(attrs)
        or _fallback_identity(attrs)
    )


def snapshot_attributes(attrs: Mapping[str, Any]) -> dict:
    return {str(k): _as_str(v) for k, v in attrs.items()}


# ---------------------------------------------------------------------------
# Process helpers
# ---------------------------------------------------------------------------


def process_name(attrs: Mapping[str, Any]) -> str:
    """Executable basename: process.executable.name, else basename of process.command."""
    name = _str_attr(attrs, ATTR_EXECUTABLE_NAME)
    if name:
        return name
    cmd = _str_attr(attrs, ATTR_PROCESS_COMMAND)
    if cmd:
        idx = max(cmd.rfind("/"), cmd.rfind("\\"))
        return cmd[idx + 1:] if idx >= 0 else cmd
    return ""


def process_path(attrs: Mapping[str, Any]) -> str:
    """Executable path: process.executable.path, else the first token of process.command."""
    path = _str_attr(attrs, ATTR_EXECUTABLE_PATH)
    if path:
        return path
    cmd = _str_attr(attrs, ATTR_PROCESS_COMMAND)
    if cmd:
        parts = cmd.split()
        return parts[0] if parts else ""
    return ""


def _has_separator(entry: str) -> bool:
    return "/" in entry or "\\" in entry


def in_include_list(attrs: Mapping[str, Any], include_list: Iterable[str]) -> bool:
    """
    Full-path entries match the executable path exactly. Bare names never
    match, so a same-named binary dropped anywhere cannot get itself included.
    """
    entries = [e for e in include_list if e]
    if not entries:
        return False
    path = process_path(attrs)
    if not path:
        return False
    for entry in entries:
        if _has_separator(entry) and entry == path:
            return True
    return False


def is_defunct(attrs: Mapping[str, Any]) -> bool:
    state = _str_attr(attrs, ATTR_PROCESS_STATE)
    return state is not None and state.strip().lower() in _DEFUNCT_STATES


__all__ = [
    "build_identity",
    "resource_type",
    "snapshot_attributes",
    "process_name",
    "process_path",
    "in_include_list",
    "is_defunct",
]
