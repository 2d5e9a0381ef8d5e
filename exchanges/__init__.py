"""
Exchange Adapters Package

Each exchange has its own subfolder with:
- __init__.py: the protocol adapter (implements ExchangeAdapter)
- api_client.py: REST endpoint helpers and payload parsing

Adapters only describe the wire contract (markets, subscribe frames,
parsing, heartbeat, funding fetch). Connection lifecycle lives in
core.connector.ConnectorSession, shared by every exchange.
"""
