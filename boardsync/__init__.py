# Shared kanban board: storage, change feed, realtime sync, view reconciliation
#
# Components:
#   schema.py    - Data model (Project, Column, Item, CustomField, Comment, ChangeEvent)
#   errors.py    - Exception hierarchy shared by store, client and session
#   policy.py    - Row-level access rules (admin / open-item / admin-only project)
#   store.py     - SQLite persistence layer, publishes row events after commit
#   feed.py      - Change feed and the in-process realtime transport
#   realtime.py  - Subscription manager (stable callbacks, status, retry)
#   reconcile.py - In-memory board state, optimistic writes, event merging
#   session.py   - Per-project board session tying the pieces together
#   client.py    - HTTP client for board_server.py
#   config.py    - YAML / environment configuration
