"""Application configuration utilities."""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings derived from environment variables."""

    database_url: str = Field(
        default="sqlite:///./invoice.db", alias="DATABASE_URL"
    )
    database_timeout_seconds: float = Field(
        default=10.0, alias="DATABASE_TIMEOUT_SECONDS"
    )

    invoice_numbering_strategy: Literal["counter", "scan"] = Field(
        default="counter", alias="INVOICE_NUMBERING_STRATEGY"
    )
    invoice_numbering_scope: Literal["global", "client"] = Field(
        default="global", alias="INVOICE_NUMBERING_SCOPE"
    )
    invoice_number_width: int = Field(default=3, alias="INVOICE_NUMBER_WIDTH")
    invoice_number_max_attempts: int = Field(
        default=5, alias="INVOICE_NUMBER_MAX_ATTEMPTS"
    )
    default_tax_rate: Decimal = Field(
        default=Decimal("19"), alias="DEFAULT_TAX_RATE"
    )

    document_locale: str = Field(default="de-DE", alias="DOCUMENT_LOCALE")
    document_currency: str = Field(default="EUR", alias="DOCUMENT_CURRENCY")
    company_name: str = Field(default="Pro Arbeitsschutz", alias="COMPANY_NAME")
    company_tagline: str | None = Field(
        default="Berufsbekleidung von Kopf bis Fuß", alias="COMPANY_TAGLINE"
    )
    company_street: str | None = Field(
        default="Dieselstraße 6-8", alias="COMPANY_STREET"
    )
    company_city: str | None = Field(
        default="63165 Mühlheim am Main", alias="COMPANY_CITY"
    )
    company_phone: str | None = Field(default=None, alias="COMPANY_PHONE")
    company_email: str | None = Field(default=None, alias="COMPANY_EMAIL")
    company_iban: str | None = Field(default=None, alias="COMPANY_IBAN")
    company_bic: str | None = Field(default=None, alias="COMPANY_BIC")
    company_bank_name: str | None = Field(default=None, alias="COMPANY_BANK_NAME")
    company_logo_path: str | None = Field(default=None, alias="COMPANY_LOGO_PATH")
    payment_terms: str | None = Field(
        default="Zahlbar binnen 14 Tagen netto.", alias="PAYMENT_TERMS"
    )
    pdf_font_path: str | None = Field(default=None, alias="PDF_FONT_PATH")
    pdf_font_bold_path: str | None = Field(default=None, alias="PDF_FONT_BOLD_PATH")

    smtp_host: str | None = Field(default=None, alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_username: str | None = Field(default=None, alias="SMTP_USERNAME")
    smtp_password: str | None = Field(default=None, alias="SMTP_PASSWORD")
    smtp_use_tls: bool = Field(default=True, alias="SMTP_USE_TLS")
    smtp_use_ssl: bool = Field(default=False, alias="SMTP_USE_SSL")
    smtp_from_email: str | None = Field(default=None, alias="SMTP_FROM_EMAIL")
    smtp_from_name: str | None = Field(default=None, alias="SMTP_FROM_NAME")
    smtp_timeout_seconds: float = Field(default=15.0, alias="SMTP_TIMEOUT_SECONDS")

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def smtp_sender(self) -> str | None:
        """Return the envelope sender, defaulting to the SMTP login."""

        return self.smtp_from_email or self.smtp_username


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]
