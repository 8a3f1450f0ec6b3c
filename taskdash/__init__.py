# Task dashboard: mirrors an external task list and syncs it to live viewers
#
# Components:
#   schema.py     - Data model (Task, TaskStatus, Project, Snapshot)
#   errors.py     - Error taxonomy
#   validation.py - Inbound payload validation
#   store.py      - SQLite persistence layer
#   document.py   - File-backed tasks.json document
#   sources.py    - Change sources (webhook push, file watch)
#   hub.py        - Subscriber registry and fan-out
#   engine.py     - Sync engine (per-project serialization, snapshot cache)
#   messages.py   - Realtime message types
#   client.py     - Realtime client with optimistic board
#   config.py     - YAML + environment configuration
#   server.py     - Flask API, event stream and CLI

__version__ = "2.0.0"
