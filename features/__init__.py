"""
Features package: each sub-package encapsulates a self-contained feature.

Convention:
  features/<feature_name>/
    __init__.py      public API re-exports
    models.py        data models specific to this feature (if applicable)
    db.py            Postgres layer
    store.py / journal.py   runtime state management
"""
