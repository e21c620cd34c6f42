"""Create the invoice engine tables in the configured database."""

from app.backend.src.core.config import get_settings
from app.backend.src.core.logging import configure_logging
from app.backend.src.db import create_schema


def init_db() -> None:
    configure_logging()
    print(f"🚀 Creating invoice tables in {get_settings().database_url}")
    create_schema()
    print("✅ Invoice engine tables are ready.")


if __name__ == "__main__":
    init_db()
