"""
Email Analytics Engine.

Ingests campaign, flow and subscriber exports from an email-marketing
provider and answers the dashboard's analytical queries over them.

Subpackages:
    - core: Settings and the PostgreSQL pool behind the durable cache tier
    - models: Pydantic schemas, enums and Ok/Err result types
    - services: Parsing, transformation, aggregation, caching and sessions
    - tests: pytest suite

Entry point:
    python -m email_analytics.main --campaigns campaigns.csv --range 30d
"""

__version__ = "1.0.0"
