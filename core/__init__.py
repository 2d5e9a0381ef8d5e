"""
Core Package

Contains the exchange-agnostic core logic including:
- ExchangeAdapter: Abstract base class describing one exchange's wire contract
- ConnectorSession: Connection lifecycle, reconnect/backoff, heartbeat and REST refresh for any adapter
- ExchangeManager: Registry of connector sessions in fixed exchange order
- Schemas: Pydantic models for snapshots, opportunities and adapter results
- Symbols / Errors / Retry / Stats: normalization, failure taxonomy, backoff policies and counters

Exchanges only supply protocol adapters; everything stateful lives here.
"""
