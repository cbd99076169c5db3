"""Database utilities for Supabase integration."""

from dataclasses import replace
from typing import Annotated

from fastapi import Depends

from sogolo.config import EscrowConfig
from sogolo.escrow.service import EscrowService
from sogolo.escrow.supabase_storage import (
    SupabaseNotificationWriter,
    SupabaseObjectStore,
    SupabaseTransactionStorage,
)
from supabase import Client, create_client

from .config import Settings, get_settings

_supabase_client: Client | None = None


def get_supabase_client(settings: Settings | None = None) -> Client:
    """Get cached Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if settings is None:
            settings = get_settings()
        # Prefer the secret key, fall back to the legacy service_role_key
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not api_key:
            raise ValueError("Either SUPABASE_SECRET_KEY or SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_client = create_client(settings.supabase_url, api_key)
    return _supabase_client


def get_db(settings: Annotated[Settings, Depends(get_settings)]) -> Client:
    """FastAPI dependency for Supabase client."""
    return get_supabase_client(settings)


# Type alias for dependency injection
Database = Annotated[Client, Depends(get_db)]


def get_escrow_config(settings: Annotated[Settings, Depends(get_settings)]) -> EscrowConfig:
    """Escrow limits from SOGOLO_* variables, with the KYC gate from app settings."""
    return replace(EscrowConfig.from_env(), require_seller_kyc=settings.require_seller_kyc)


def get_escrow_service(
    db: Database,
    config: Annotated[EscrowConfig, Depends(get_escrow_config)],
) -> EscrowService:
    """FastAPI dependency wiring the escrow engine to Supabase collaborators."""
    return EscrowService(
        SupabaseTransactionStorage(db),
        SupabaseObjectStore(db),
        notifier=SupabaseNotificationWriter(db),
        config=config,
    )


Escrow = Annotated[EscrowService, Depends(get_escrow_service)]
