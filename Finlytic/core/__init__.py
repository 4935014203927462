"""
Core package for Finlytic providing the offline-first sync services.

This package includes:

- :mod:`Finlytic.core.models` – Entity records and their document serialization.
- :mod:`Finlytic.core.database` – Local SQLite cache of entity records with corruption recovery.
- :mod:`Finlytic.core.auth` – Google credential loading and refresh.
- :mod:`Finlytic.core.service` – Cloud Firestore REST adapter.
- :mod:`Finlytic.core.connectivity` – Online/offline detection.
- :mod:`Finlytic.core.entities` – Remote-first entity services with local cache fallback.
- :mod:`Finlytic.core.sync` – Queue of pending changes replayed against the remote store.
- :mod:`Finlytic.core.container` – Composition root wiring the services together.
"""
