import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from sqlalchemy import inspect
from app.models.database import Base, engine

table_name = sys.argv[1] if len(sys.argv) > 1 else 'transfers'

inspector = inspect(engine)
if not inspector.has_table(table_name):
    raise SystemExit(f"Table '{table_name}' does not exist")

actual = [column['name'] for column in inspector.get_columns(table_name)]
print(actual)

model = Base.metadata.tables.get(table_name)
if model is not None:
    missing = [column.name for column in model.columns if column.name not in actual]
    if missing:
        print("Missing model columns:", missing)
