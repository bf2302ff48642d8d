'''
Email Analytics Engine Test Suite

Test Modules:
-------------
- test_dates.py: Date resolution chain, plausibility, two-digit years
- test_transformers.py: Field coercion and the three record transformers
- test_csv_parser.py: Chunked parsing, malformed rows, progress, validation
- test_metrics.py: Metric dispatch table and weighted-ratio derivation
- test_time_series.py: Windows, escalation, truncation, caps, budget
- test_aggregation.py: Fixed windows, period comparison, breakdowns
- test_cache.py: Fast/durable tiers, revival, write-behind events
- test_session.py: Loading, replacement, hydration, safe query defaults

Running Tests:
--------------
    pip install -e ".[test]"
    pytest email_analytics/tests -v
'''

__all__ = []
