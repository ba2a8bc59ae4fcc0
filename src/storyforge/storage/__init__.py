"""Persistence backends: one contract, two interchangeable stores.

Layout of a flat store (one JSON text file per namespaced key):
    ~/.storyforge/data/
    ├── storyforge_state.json            # StateManager snapshot
    ├── storyforge_errors.json           # Bounded error log (50 entries)
    ├── storyforge_stories~1700000.json  # Collection record: <collection>~<id>
    └── storyforge_cache~summarize_ab12.json

A collection store keeps the same data in ``storyforge.db`` (SQLite) with one
table per collection plus a ``kv`` table. ``open_backend()`` picks one at startup.
"""
