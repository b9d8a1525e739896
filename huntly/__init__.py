# Huntly CRM core: authentication gate and kanban board ordering
#
# Components:
#   schema.py - Data model (BoardItem, ApiKey, User, ItemStatus, auth results)
#   errors.py - Exception taxonomy mapped to HTTP responses by crm_server.py
#   config.py - YAML/env configuration with fail-fast validation
#   store.py  - SQLite persistence layer
#   board.py  - Column reordering and status bookkeeping for tasks and stories
#   auth.py   - Session tokens, API keys, passwords and request authorization
