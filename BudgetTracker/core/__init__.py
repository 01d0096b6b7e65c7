"""
Core package for BudgetTracker providing the offline-first data layer.

This package includes:

- :mod:`BudgetTracker.core.database` – Local SQLite store, schema migrations and the transactional sync outbox.
- :mod:`BudgetTracker.core.validator` – Validation and sanitization of records before they are synchronized.
- :mod:`BudgetTracker.core.conflict` – Reconciliation of local and remote versions of the same record.
- :mod:`BudgetTracker.core.service` – REST client for the remote backend.
- :mod:`BudgetTracker.core.auth` – Session tokens, the current user and login/registration.
- :mod:`BudgetTracker.core.connectivity` – Network reachability monitoring.
- :mod:`BudgetTracker.core.sync` – Durable sync queue draining local changes to the remote backend.
- :mod:`BudgetTracker.core.context` – Construction and wiring of the services above.
"""
