# DevPlanner: a Kanban board stored as Markdown files on disk
#
# Components:
#   schema.py    - Data model (Card, CardFrontmatter, TaskItem, ProjectConfig, HistoryEvent)
#   markdown.py  - Frontmatter/checklist codec
#   locks.py     - Per-key asyncio locks (one in-flight mutation per card)
#   store.py     - Card store over <workspace>/<project>/<lane>/<card>.md
#   projects.py  - Project config and workspace preferences
#   events.py    - WebSocket event broadcaster
#   history.py   - Activity log with debounced persistence
#   bridge.py    - Store operations + event broadcast + history recording
#   watcher.py   - Filesystem watcher for out-of-band edits
#   runtime.py   - Event loop thread and service wiring
#   server.py    - REST API and entry point

__version__ = "0.3.0"
