import json

from batcher.config import load_config
from batcher.orchestrator import BatchOrchestrator
from batcher.simulation import build_demo_world
from extensions.resource_monitor import ResourceMonitor


def test_sample_reads_process_and_host(tmp_path):
    mon = ResourceMonitor(tmp_path / "summary.json")
    mon.start()
    sample = mon.sample()

    assert sample is not None
    assert sample.rss_bytes > 0
    assert 0.0 <= sample.mem_system_percent <= 100.0
    assert "rss=" in mon.describe()


def test_stop_writes_summary(tmp_path):
    out = tmp_path / "nested" / "summary.json"
    mon = ResourceMonitor(out)
    mon.sample()
    mon.sample()
    mon.stop()

    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["samples"] == 2
    assert data["rss_bytes"]["peak"] >= data["rss_bytes"]["avg"] > 0


def test_status_report_includes_controller_sample():
    w = build_demo_world()
    orch = BatchOrchestrator(w, w, load_config(), clock=w.now, monitor=ResourceMonitor())
    orch.rescan_fleet()
    assert "controller: rss=" in orch.status_report()
