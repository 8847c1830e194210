"""
Reporting helpers for pipeline runs.
"""

from bulkbuy.scripts.result_reporter import ResultReporter
