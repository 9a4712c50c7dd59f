"""
Deferred task queue.

Components:
- task_models.py: data structures (Task, TaskStatus)
- task_errors.py: error taxonomy shared by the store, the registry and the worker
- task_store.py: SQLite-backed storage, claim protocol, outcome recording, retention cleanup
- task_registry.py: task type -> handler mapping
- task_worker.py: periodic sweep that claims due tasks and dispatches them
- task_api.py: scheduling helpers used by the rest of the app
- task_handlers.py: built-in handlers (delete_message)
"""
