# atp/tests/test_identity.py
import pytest

from atp.identity import (
    build_identity,
    in_include_list,
    is_defunct,
    process_name,
    process_path,
    resource_type,
)


@pytest.mark.parametrize(
    "attrs,expected",
    [
        ({"cpu": "0", "host.name": "h1"}, "cpu.0@h1"),
        ({"process.pid": 42, "host.name": "h1"}, "process.42@h1"),
        ({"device": "sda", "direction": "read", "host.name": "h1"}, "disk.sda@h1"),
        ({"mountpoint": "/data", "host.name": "h1"}, "filesystem./data@h1"),
        ({"state": "used", "host.name": "h1"}, "memory@h1"),
        ({"device": "eth0", "direction": "transmit", "host.name": "h1"}, "network.eth0@h1"),
        ({"direction": "page_in", "host.name": "h1"}, "paging@h1"),
        ({"host.name": "h1"}, "system@h1"),
        ({"service.instance.id": "abc-1", "service.name": "api"}, "service.instance.id:abc-1"),
        ({"service.name": "api", "service.namespace": "shop"}, "service:shop/api"),
        ({"service.name": "api"}, "service:api"),
        ({"b": "2", "a": 1}, "a=1,b=2"),
        ({}, "resource:empty"),
    ],
)
def test_identity_formats(attrs, expected):
    assert build_identity(attrs) == expected


def test_identity_is_stable_across_attribute_order():
    a = {"z": 1, "y": "two", "x": True}
    b = {"x": True, "z": 1, "y": "two"}
    assert build_identity(a) == build_identity(b)


def test_fallback_identity_is_capped():
    attrs = {"k%03d" % i: "v" * 20 for i in range(100)}
    assert len(build_identity(attrs)) == 512


def test_process_without_host():
    assert build_identity({"process.pid": 7}) == "process.7"


def test_process_identity_wins_over_service():
    attrs = {"process.pid": 9, "host.name": "h1", "service.name": "api"}
    assert resource_type(attrs) == "process"
    assert build_identity(attrs) == "process.9@h1"


def test_process_name_and_path():
    attrs = {"process.command": "/usr/bin/python3 app.py"}
    assert process_path(attrs) == "/usr/bin/python3"
    assert process_name({"process.command": "/usr/sbin/nginx"}) == "nginx"
    assert process_name({"process.executable.name": "java", "process.command": "/x/y"}) == "java"


def test_include_list_full_path_only():
    nginx = {"process.executable.path": "/usr/sbin/nginx", "process.pid": 1}
    spoof = {"process.executable.path": "/tmp/nginx", "process.pid": 2}

    assert in_include_list(nginx, ["/usr/sbin/nginx"])
    assert not in_include_list(spoof, ["/usr/sbin/nginx"])
    # bare names never match, wherever the binary lives
    assert not in_include_list(nginx, ["nginx"])
    assert not in_include_list(spoof, ["nginx"])


def test_include_list_uses_command_when_no_path():
    attrs = {"process.command": "/opt/app/bin/server --port 80"}
    assert in_include_list(attrs, ["/opt/app/bin/server"])
    assert not in_include_list({}, ["/opt/app/bin/server"])
    assert not in_include_list(attrs, [])


@pytest.mark.parametrize("state", ["Z", "z", "zombie", "Defunct"])
def test_defunct_states(state):
    assert is_defunct({"process.state": state})


@pytest.mark.parametrize("attrs", [{"process.state": "R"}, {"process.state": "sleeping"}, {}])
def test_not_defunct(attrs):
    assert not is_defunct(attrs)
