"""
Tests for run reports.
"""

import csv
import json

import pytest
import yaml
from pydantic import SecretStr

from bulkbuy.scripts.result_reporter import ResultReporter
from bulkbuy.solana.models import PipelineSummary, StageResult, SubmissionResult, TxStatus, WalletInfo


@pytest.fixture
def summary():
    buy = StageResult(name="buy_token", transactions=2, skipped_wallets=["walletC"])
    buy.results = [
        SubmissionResult(batch_index=0, endpoint="http://a", status=TxStatus.ACCEPTED, signature="sig0", wallets=["walletA", "walletB"]),
        SubmissionResult(batch_index=0, endpoint="http://b", status=TxStatus.REJECTED, error="unavailable", wallets=["walletA", "walletB"]),
        SubmissionResult(batch_index=1, endpoint="http://a", status=TxStatus.ACCEPTED, signature="sig1", wallets=["walletD"]),
        SubmissionResult(batch_index=1, endpoint="http://b", status=TxStatus.ACCEPTED, signature="sig1", wallets=["walletD"]),
    ]
    buy.end_time = buy.start_time + 1.5

    atas = StageResult(name="create_token_atas", transactions=1)
    atas.results = [SubmissionResult(batch_index=0, endpoint="http://a", status=TxStatus.CONFIRMED, signature="sig2", wallets=["walletA"])]
    atas.end_time = atas.start_time + 0.5

    wallets = [
        WalletInfo(index=1, address="walletA", secret_key=SecretStr("top-secret")),
        WalletInfo(index=2, address="walletB"),
    ]
    result = PipelineSummary(mint="MintAddress", wallets=wallets, stages=[atas, buy])
    result.end_time = result.start_time + 3
    return result


@pytest.fixture
def reporter(tmp_path):
    return ResultReporter(str(tmp_path / "reports"))


def test_wallet_tally_counts_one_entry_per_endpoint(summary):
    tally = ResultReporter.wallet_tally(summary.stage("buy_token"))

    assert tally["walletA"] == {"success": 1, "failure": 1}
    assert tally["walletD"] == {"success": 2, "failure": 0}
    assert tally["walletC"] == {"success": 0, "failure": 0}


def test_endpoint_tally(summary):
    tally = ResultReporter.endpoint_tally(summary.stage("buy_token"))

    assert tally == {"http://a": {"success": 2, "failure": 0}, "http://b": {"success": 1, "failure": 1}}


def test_console_report(reporter, summary):
    report = reporter.generate_console_report(summary)

    assert "Mint: MintAddress" in report
    assert "buy_token: 2 txs, 3 ok / 1 failed" in report
    assert "rejected: 1 failures" in report
    assert "SKIPPED WALLETS:" in report and "walletC" in report
    assert "sig0" in report


def test_json_report_omits_secrets(reporter, summary):
    path = reporter.save_detailed_report(summary, "json")

    with open(path) as f:
        data = json.load(f)
    assert data["run"]["mint"] == "MintAddress"
    assert [s["name"] for s in data["stages"]] == ["create_token_atas", "buy_token"]
    assert data["stages"][1]["failed"] == 1
    assert "secret_key" not in data["run"]["wallets"][0]
    assert "top-secret" not in open(path).read()


def test_csv_report_has_one_row_per_result(reporter, summary):
    path = reporter.save_detailed_report(summary, "csv")

    with open(path, newline="") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 5
    assert rows[1]["wallets"] == "walletA walletB"
    assert rows[2]["error"] == "unavailable"


def test_yaml_report(reporter, summary):
    path = reporter.save_detailed_report(summary, "yaml")

    with open(path) as f:
        data = yaml.safe_load(f)
    assert data["stages"]["buy_token"]["skipped"] == ["walletC"]
    assert data["run"]["wallets"] == 2


def test_unsupported_format_raises(reporter, summary):
    with pytest.raises(ValueError):
        reporter.save_detailed_report(summary, "xml")
