# FILE: scripts/filter_dump.py
# Usage: python scripts/filter_dump.py BATCH.json [CONFIG.yaml]
# Runs one JSON batch (MetricsBatch.to_dict layout) through the filter once and prints the result.
import json, os, sys

from atp.config import load_filter_config
from atp.exporter import ATPPrometheusExporter
from atp.logging import configure_json_logging
from atp.pdata import MetricsBatch
from atp.processor import AdaptiveTelemetryProcessor

if len(sys.argv) < 2:
    sys.exit("usage: filter_dump.py BATCH.json [CONFIG.yaml]")
if len(sys.argv) > 2:
    os.environ["ATP_CONFIG_PATH"] = sys.argv[2]

configure_json_logging(os.environ.get("ATP_LOG_LEVEL", "WARNING"))
cfg = load_filter_config().model_copy(update={"enable_storage": False})
proc = AdaptiveTelemetryProcessor(cfg, exporter=ATPPrometheusExporter(enabled=False), background=False)
with open(sys.argv[1], "r", encoding="utf-8") as f:
    batch = MetricsBatch.from_dict(json.load(f))
print(json.dumps(proc.consume(batch).to_dict(), indent=2, sort_keys=True))
proc.shutdown()
