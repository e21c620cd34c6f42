"""Utilities for seeding development data."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.backend.src.models import Client, Product

DEFAULT_CLIENT_NAME = "Musterbau GmbH"
DEFAULT_CLIENT_EMAIL = "buchhaltung@musterbau.example"
DEFAULT_CLIENT_NUMBER = "K101"

# name, sku, price, buying price, category, stock (None: not tracked)
DEFAULT_PRODUCTS: tuple[tuple[str, str, Decimal, Decimal, str, int | None], ...] = (
    ("Sicherheitsschuh S3", "PA-S3-100", Decimal("89.90"), Decimal("52.00"), "Schuhe", 40),
    (
        "Warnschutzjacke Klasse 3",
        "PA-WJ-300",
        Decimal("54.50"),
        Decimal("31.75"),
        "Bekleidung",
        60,
    ),
    (
        "Arbeitshandschuhe Nitril",
        "PA-HS-020",
        Decimal("4.95"),
        Decimal("1.80"),
        "Handschutz",
        500,
    ),
    ("Versandpauschale", "PA-VS-001", Decimal("5.90"), Decimal("4.20"), "shipping", 0),
)


@dataclass
class SeedResult:
    """Information about the seeded client and products."""

    client: Client
    client_created: bool
    products: list[Product] = field(default_factory=list)
    products_created: int = 0


def seed_development_data(
    session: Session,
    *,
    client_name: str = DEFAULT_CLIENT_NAME,
    client_email: str = DEFAULT_CLIENT_EMAIL,
    client_number: str = DEFAULT_CLIENT_NUMBER,
) -> SeedResult:
    """Ensure a demo client and a few catalog products exist.

    Existing records, matched by client number and SKU, are left as they are.
    """

    client = session.execute(
        select(Client).where(Client.client_unique_number == client_number)
    ).scalar_one_or_none()
    client_created = False
    if client is None:
        client = Client(
            name=client_name,
            company=client_name,
            email=client_email,
            street="Hauptstraße 1",
            postal_code="60311",
            city="Frankfurt am Main",
            country="Deutschland",
            client_unique_number=client_number,
        )
        session.add(client)
        session.flush()
        client_created = True

    result = SeedResult(client=client, client_created=client_created)
    for name, sku, price, buying_price, category, stock in DEFAULT_PRODUCTS:
        product = session.execute(
            select(Product).where(Product.sku == sku)
        ).scalar_one_or_none()
        if product is None:
            product = Product(
                name=name,
                sku=sku,
                price=price,
                buying_price=buying_price,
                category=category,
                stock=stock,
            )
            session.add(product)
            session.flush()
            result.products_created += 1
        result.products.append(product)

    return result


__all__ = ["seed_development_data", "SeedResult"]
