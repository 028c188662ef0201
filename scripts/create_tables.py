import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from sqlalchemy import inspect
from app.models.database import Base, engine, init_db

before = set(inspect(engine).get_table_names())
init_db()
created = sorted(set(Base.metadata.tables) - before)

print("Created tables:", ", ".join(created) if created else "none (schema already present)")
