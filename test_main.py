"""
Tests for the command-line entry point.
"""

import json

from loguru import logger

from bulkbuy import main as entry


async def test_missing_fee_payer_exits_with_config_status(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("FEE_PAYER_PRIVATE_KEY", raising=False)

    try:
        assert await entry.main() == 2
    finally:
        logger.remove()

    assert list((tmp_path / "logs").glob("bulk_buy_*.log"))


def test_logged_fields_reach_console_and_json_file(monkeypatch, tmp_path, capsys):
    monkeypatch.chdir(tmp_path)
    entry.setup_logging("info")
    try:
        logger.info("Stage buy_token finished", extra={"stage": "buy_token", "failed": 0})
        logger.bind(endpoint="http://a").warning("rejected: {'InstructionError': [2, {'Custom': 1}]}")
    finally:
        logger.remove()

    out = capsys.readouterr().out
    assert "Stage buy_token finished | stage=buy_token failed=0" in out
    assert "{'Custom': 1}" in out and "endpoint=http://a" in out

    (log_file,) = (tmp_path / "logs").glob("bulk_buy_*.log")
    records = [json.loads(line)["record"] for line in log_file.read_text().splitlines()]
    assert records[0]["extra"] == {"stage": "buy_token", "failed": 0}
