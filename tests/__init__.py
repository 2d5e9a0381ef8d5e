"""
Test Suite

Structure:
- tests/unit/: Tests for individual components (normalization, connectors, aggregation, API)

Uses pytest with pytest-asyncio for testing async functionality. No test
touches the network: transports and REST clients are replaced by fakes.
"""
