from __future__ import annotations
import os

DATABASE_URL = os.environ["DATABASE_URL"]
MAX_LIST_LIMIT = int(os.environ.get("MAX_LIST_LIMIT", "100"))
