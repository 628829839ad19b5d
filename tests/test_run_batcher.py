import json

import pytest

import run_batcher


def test_parse_target_with_and_without_fraction():
    assert run_batcher._parse_target("alpha") == ("alpha", None)
    assert run_batcher._parse_target("beta:0.25") == ("beta", 0.25)


@pytest.mark.asyncio
async def test_simulated_run_writes_logs_and_summary(tmp_path):
    await run_batcher.main_async([
        "--target", "alpha:0.1",
        "--duration", "10",
        "--servers",
        "--log-dir", str(tmp_path),
    ])

    assert "alpha" in (tmp_path / "alpha.log").read_text(encoding="utf-8")
    assert (tmp_path / "batcher.log").exists()
    summary = json.loads((tmp_path / "resource_summary.json").read_text(encoding="utf-8"))
    assert summary["samples"] >= 1
