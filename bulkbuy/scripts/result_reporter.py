"""
Result reporting for bulk buy runs.
Handles formatting, exporting, and tallying submission results.
"""

import csv
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

import yaml
from loguru import logger

from bulkbuy.solana.models import PipelineSummary, StageResult, SubmissionResult


class ResultReporter:
    """Generates reports from pipeline summaries."""

    def __init__(self, output_dir: str = "data/reports"):
        """Initialize result reporter."""
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def wallet_tally(stage: StageResult) -> Dict[str, Dict[str, int]]:
        """
        Count successes and failures per wallet across every endpoint.

        A wallet contained in a transaction sent to M endpoints receives M
        entries, one per endpoint answer.
        """
        tally: Dict[str, Dict[str, int]] = {}
        for result in stage.results:
            for wallet in result.wallets:
                counts = tally.setdefault(wallet, {"success": 0, "failure": 0})
                counts["success" if result.success else "failure"] += 1
        for wallet in stage.skipped_wallets:
            tally.setdefault(wallet, {"success": 0, "failure": 0})
        return tally

    @staticmethod
    def endpoint_tally(stage: StageResult) -> Dict[str, Dict[str, int]]:
        """Count successes and failures per endpoint."""
        tally: Dict[str, Dict[str, int]] = {}
        for result in stage.results:
            counts = tally.setdefault(result.endpoint, {"success": 0, "failure": 0})
            counts["success" if result.success else "failure"] += 1
        return tally

    def _analyze_errors(self, results: List[SubmissionResult]) -> Dict[str, int]:
        """Count failures by status."""
        error_counts = {}
        for result in results:
            if not result.success:
                error_counts[result.status.value] = error_counts.get(result.status.value, 0) + 1
        return error_counts

    def generate_console_report(self, summary: PipelineSummary) -> str:
        """Generate a formatted console report."""
        duration_str = f"{summary.duration:.2f}s" if summary.duration else "N/A"

        report_lines = [
            "=" * 80,
            "BULK BUY EXECUTION REPORT",
            "=" * 80,
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            "",
            "RUN SUMMARY:",
            f"  Mint: {summary.mint or 'N/A'}",
            f"  Wallets: {len(summary.wallets)}",
            f"  Duration: {duration_str}",
            "",
            "STAGES:",
        ]

        for stage in summary.stages:
            stage_duration = f"{stage.duration:.2f}s" if stage.duration else "N/A"
            report_lines.append(
                f"  {stage.name}: {stage.transactions} txs, "
                f"{stage.success_count} ok / {stage.failure_count} failed - {stage_duration}"
            )
        report_lines.append("")

        for stage in summary.stages:
            if stage.failure_count:
                report_lines.extend([
                    f"ERRORS ({stage.name}):",
                    *[f"  {status}: {count} failures" for status, count in self._analyze_errors(stage.results).items()],
                    ""
                ])

        buy = summary.stage("buy_token")
        if buy is not None:
            endpoints = self.endpoint_tally(buy)
            if len(endpoints) > 1:
                report_lines.extend([
                    "ENDPOINTS:",
                    *[f"  {url}: {c['success']} ok / {c['failure']} failed" for url, c in endpoints.items()],
                    ""
                ])

            tally = self.wallet_tally(buy)
            if len(tally) <= 20:
                report_lines.extend([
                    "WALLET RESULTS:",
                    "  Wallet                                       | Success | Failure",
                    "  " + "-" * 64,
                    *[f"  {wallet:44s} | {c['success']:7d} | {c['failure']:7d}" for wallet, c in tally.items()],
                    ""
                ])

            if buy.skipped_wallets:
                report_lines.extend([
                    "SKIPPED WALLETS:",
                    *[f"  {wallet}" for wallet in buy.skipped_wallets],
                    ""
                ])

            signatures = [r.signature for r in buy.results if r.signature][:5]
            if signatures:
                report_lines.extend(["EXAMPLE SIGNATURES:", *[f"  {sig}" for sig in signatures], ""])

        report_lines.append("=" * 80)
        return "\n".join(report_lines)

    def save_detailed_report(self, summary: PipelineSummary, format: str = "json") -> str:
        """Save detailed report to file."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filepath = self.output_dir / f"bulk_buy_report_{timestamp}.{format.lower()}"

        if format.lower() == "json":
            with open(filepath, 'w') as f:
                json.dump(self._create_json_report(summary), f, indent=2, default=str)

        elif format.lower() == "csv":
            self._create_csv_report(summary, filepath)

        elif format.lower() == "yaml":
            with open(filepath, 'w') as f:
                yaml.dump(self._create_yaml_report(summary), f, default_flow_style=False)

        else:
            raise ValueError(f"Unsupported format: {format}")

        logger.info(f"Detailed report saved: {filepath}")
        return str(filepath)

    def _create_json_report(self, summary: PipelineSummary) -> Dict[str, Any]:
        """Create comprehensive JSON report."""
        return {
            "metadata": {
                "generated_at": datetime.now().isoformat(),
                "report_version": "1.0",
            },
            "run": {
                "mint": summary.mint,
                "start_time": summary.start_time,
                "end_time": summary.end_time,
                "duration_seconds": summary.duration,
                "wallets": [w.model_dump(mode="json", exclude={"secret_key"}) for w in summary.wallets],
            },
            "stages": [
                {
                    "name": stage.name,
                    "transactions": stage.transactions,
                    "successful": stage.success_count,
                    "failed": stage.failure_count,
                    "duration_seconds": stage.duration,
                    "skipped_wallets": stage.skipped_wallets,
                    "wallet_tally": self.wallet_tally(stage),
                    "endpoint_tally": self.endpoint_tally(stage),
                    "results": [r.model_dump(mode="json") for r in stage.results],
                }
                for stage in summary.stages
            ],
        }

    def _create_csv_report(self, summary: PipelineSummary, filepath: Path) -> None:
        """Create CSV report with one row per submission result."""
        with open(filepath, 'w', newline='') as csvfile:
            fieldnames = ['stage', 'batch_index', 'endpoint', 'status', 'signature', 'wallets', 'error', 'timestamp']
            writer = csv.DictWriter(csvfile, fieldnames=fieldnames)
            writer.writeheader()

            for stage in summary.stages:
                for result in stage.results:
                    writer.writerow({
                        'stage': stage.name,
                        'batch_index': result.batch_index,
                        'endpoint': result.endpoint,
                        'status': result.status.value,
                        'signature': result.signature or '',
                        'wallets': ' '.join(result.wallets),
                        'error': result.error or '',
                        'timestamp': result.timestamp.isoformat(),
                    })

    def _create_yaml_report(self, summary: PipelineSummary) -> Dict[str, Any]:
        """Create YAML-friendly report structure."""
        return {
            "run": {
                "mint": summary.mint,
                "wallets": len(summary.wallets),
                "duration": f"{summary.duration:.2f}s" if summary.duration else "N/A",
            },
            "stages": {
                stage.name: {
                    "transactions": stage.transactions,
                    "successful": stage.success_count,
                    "failed": stage.failure_count,
                    "skipped": list(stage.skipped_wallets),
                }
                for stage in summary.stages
            },
        }

