"""Seed the development database with a demo client and catalog products."""

from app.backend.src.db import create_schema, session_scope
from app.backend.src.services.seed import seed_development_data


def main() -> None:
    """Create tables (if needed) and ensure demo data exists."""

    create_schema()

    with session_scope() as session:
        result = seed_development_data(session)
        session.flush()

        print("✅ Development data ready!")
        client_status = "created" if result.client_created else "unchanged"
        print(
            f"Client ({client_status}): {result.client.name} <{result.client.email}> "
            f"[id={result.client.id}, number={result.client.client_unique_number}]"
        )
        print(f"Products: {len(result.products)} ({result.products_created} created)")
        for product in result.products:
            print(f"  - [{product.id}] {product.sku} {product.name}: {product.price}")


if __name__ == "__main__":
    main()
