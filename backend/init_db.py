from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from teleconsulta.db.session import engine, Base
from teleconsulta.utils.logger import safe_print

# Import all models before create_all
from teleconsulta.models import call_room, ice_candidate  # noqa: F401


def create_missing_tables():
    safe_print("Creating missing signaling tables...")
    try:
        Base.metadata.create_all(bind=engine)
        safe_print("Tables created successfully (if missing).")
    except SQLAlchemyError as e:
        safe_print("Error creating tables:", e)
        raise


def add_missing_columns():
    inspector = inspect(engine)
    with engine.connect() as conn:
        for table_name, model_table in Base.metadata.tables.items():
            if table_name in inspector.get_table_names():
                existing_cols = [col["name"] for col in inspector.get_columns(table_name)]
                for col_name, col in model_table.columns.items():
                    if col_name not in existing_cols:
                        sql = f'ALTER TABLE "{table_name}" ADD COLUMN "{col_name}" {col.type.compile(engine.dialect)};'
                        safe_print(f"Adding column {table_name}.{col_name}")
                        try:
                            conn.execute(text(sql))
                            conn.commit()
                        except SQLAlchemyError as e:
                            safe_print(f"Error adding column {col_name}: {e}")
            else:
                safe_print(f"Table {table_name} not found in DB, creating it...")
                model_table.create(bind=engine, checkfirst=True)


if __name__ == "__main__":
    safe_print("Syncing signaling database...")
    create_missing_tables()
    add_missing_columns()
    safe_print("Database sync complete.")
