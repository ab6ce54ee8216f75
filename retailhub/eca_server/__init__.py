"""
RetailHub ECA Server - event-to-graph engine for multi-tenant retail integrations.

This package ingests domain events (sales, purchases, inventory movements,
transfers, returns) and turns each one into mutations on a generic
entity-relationship-transaction graph:
- Business entities (product, location, supplier, customer) resolved by external id
- Business transactions with per-type lifecycle status and an append-only history
- Directed relationships linking transactions to the entities they affect
- Snapshots holding incrementally maintained aggregates (stock per location)

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌──────────────────┐
    │  Webhook    │────▶│ Webhook Pipeline │────▶│ Action Processor │
    │  (POST)     │     │ (auth, envelope) │     │   (ECA engine)   │
    └─────────────┘     └──────────────────┘     └────────┬─────────┘
                                                          │
                 ┌──────────────┬──────────────┬──────────┴─────┬──────────────┐
                 ▼              ▼              ▼                ▼              ▼
           ┌──────────┐  ┌─────────────┐ ┌─────────────┐ ┌────────────┐ ┌──────────┐
           │ Entities │  │Relationships│ │Transactions │ │ Snapshots  │ │  Audit   │
           └────┬─────┘  └──────┬──────┘ └──────┬──────┘ └─────┬──────┘ └────┬─────┘
                └───────────────┴───────┬───────┴──────────────┴─────────────┘
                                        ▼
                               ┌─────────────────┐      ┌───────────┐
                               │  StoreBackend   │◀─────│ Analytics │
                               │ (SQLite/memory) │      │ (read-only)│
                               └─────────────────┘      └───────────┘

Invariants:
    - The Action Processor is the only writer of transactions and relationships
    - Every operation is scoped by tenant_id
    - Transaction status only changes through the state machine
    - state_history is append-only
    - Analytics never writes state

How to change safely:
    - New flows or actions are configuration in schema/actions.py
    - New statuses must be registered in the state machine before freeze
    - Store schema changes must stay backward compatible
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
