"""
BrokerBridge API routes.

This module provides REST API endpoints for:
- File import preview and import (CSV / OFX)
- Connection listing, deletion and manual sync
- E*TRADE OAuth handshake
- Aggregated positions, portfolio summary and per-instrument details
"""

import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from brokerbridge.services.aggregated_positions_service import AggregatedPositionsService, PositionFilters
from brokerbridge.services.connection_sync_service import ConnectionSyncService, SyncOptions
from brokerbridge.utils.config import get_config
from brokerbridge.utils.credential_vault import CredentialVault
from brokerbridge.utils.errors import AdapterError, ConnectionNotFoundError
from brokerbridge.utils.instrument_parser import AssetClass
from brokerbridge.utils.portfolio.adapter_registry import create_default_registry
from brokerbridge.utils.portfolio.file_import_provider import is_ofx_upload, preview_file_import
from brokerbridge.utils.portfolio.models import BrokerKind
from brokerbridge.utils.portfolio.repository import InMemoryPortfolioRepository, PortfolioRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/brokerbridge", tags=["brokerbridge"])

ERROR_STATUS_CODES = {
    "VALIDATION_ERROR": 400,
    "PARSE_ERROR": 400,
    "ZERO_ACCOUNTS": 400,
    "UNSUPPORTED_BROKER": 400,
    "AUTH_EXPIRED": 401,
    "INTEGRITY_ERROR": 401,
    "NOT_FOUND": 404,
    "SYNC_CONFLICT": 409,
    "PROVIDER_ERROR": 502,
    "CONFIGURATION_ERROR": 500,
}


def verify_api_key(x_api_key: str = Header(None)):
    """Verify API key for authentication."""
    expected_key = os.getenv("BACKEND_API_KEY")
    if not expected_key:
        return x_api_key  # If no key configured, allow all (dev mode)
    if x_api_key != expected_key:
        raise HTTPException(status_code=403, detail="Invalid API key")
    return x_api_key


def http_error(error: AdapterError) -> HTTPException:
    status_code = ERROR_STATUS_CODES.get(error.code, 500)
    if status_code >= 500:
        logger.error(f"❌ {error.code}: {error.message}")
    else:
        logger.warning(f"⚠️ {error.code}: {error.message}")
    return HTTPException(status_code=status_code, detail=error.to_dict())


# Service singletons

_repository: Optional[PortfolioRepository] = None
_sync_service: Optional[ConnectionSyncService] = None
_positions_service: Optional[AggregatedPositionsService] = None


def get_repository() -> PortfolioRepository:
    global _repository
    if _repository is None:
        backend = get_config().repository_backend
        if backend == "supabase":
            from brokerbridge.utils.supabase.portfolio_repository import SupabasePortfolioRepository
            _repository = SupabasePortfolioRepository()
        else:
            _repository = InMemoryPortfolioRepository()
        logger.info(f"💾 BrokerBridge repository backend: {backend}")
    return _repository


def get_sync_service() -> ConnectionSyncService:
    global _sync_service
    if _sync_service is None:
        try:
            registry = create_default_registry(CredentialVault())
        except AdapterError as e:
            raise http_error(e)
        _sync_service = ConnectionSyncService(get_repository(), registry)
    return _sync_service


def get_positions_service() -> AggregatedPositionsService:
    global _positions_service
    if _positions_service is None:
        _positions_service = AggregatedPositionsService(get_repository())
    return _positions_service


async def shutdown_services() -> None:
    """Close adapter HTTP sessions held by the sync service singleton."""
    global _sync_service
    if _sync_service is None:
        return
    await _sync_service.registry.close()
    _sync_service = None
    logger.info("🔌 BrokerBridge adapters closed")


# Request models

class FilePreviewRequest(BaseModel):
    file_content: str = Field(..., description="Raw CSV or OFX text")
    file_name: str = Field(..., description="Original file name")
    column_mapping: Optional[Dict[str, Any]] = Field(None, description="Explicit column mapping")


class FileImportRequest(FilePreviewRequest):
    org_id: str
    user_id: str
    account_nickname: Optional[str] = None
    as_of: Optional[datetime] = Field(None, description="Statement date; defaults to now")
    connection_id: Optional[str] = Field(None, description="Re-upload into an existing file connection")


class SyncRequest(BaseModel):
    replace_snapshot: bool = True
    force_refresh: bool = False
    skip_instrument_creation: bool = False


class ETradeAuthRequest(BaseModel):
    callback_url: Optional[str] = None


class ETradeCallbackRequest(BaseModel):
    org_id: str
    user_id: str
    oauth_verifier: str
    oauth_state: Optional[str] = None
    request_token: Optional[str] = None
    request_token_secret: Optional[str] = None
    connection_id: Optional[str] = Field(None, description="Re-authenticate an existing connection")


# File import

@router.post("/import/preview")
async def preview_import(request: FilePreviewRequest, api_key: str = Depends(verify_api_key)):
    """Parse an upload and return detection, mapping and sample rows without saving anything."""
    try:
        return {'success': True, 'preview': preview_file_import(
            request.file_content, request.file_name, request.column_mapping
        )}
    except AdapterError as e:
        raise http_error(e)


@router.post("/import")
async def import_file(request: FileImportRequest,
                      api_key: str = Depends(verify_api_key),
                      service: ConnectionSyncService = Depends(get_sync_service)):
    """Create a file connection (or replace an existing one's file) and sync it."""
    auth_input = {
        'file_content': request.file_content,
        'file_name': request.file_name,
        'column_mapping': request.column_mapping,
        'account_nickname': request.account_nickname,
        'as_of': request.as_of.isoformat() if request.as_of else None,
    }
    try:
        if request.connection_id:
            existing = service.get_connection(request.connection_id, request.user_id)
            if existing['org_id'] != request.org_id:
                raise ConnectionNotFoundError(f"Connection {request.connection_id} not found")
            result = await service.sync_connection(
                request.connection_id, SyncOptions(force_refresh=True), auth_input=auth_input,
                user_id=request.user_id,
            )
            connection_id = request.connection_id
        else:
            broker = BrokerKind.OFX_IMPORT if is_ofx_upload(request.file_name, request.file_content) \
                else BrokerKind.CSV_IMPORT
            created = await service.create_connection(request.org_id, request.user_id, broker.value, auth_input)
            connection_id = created['connection_id']
            result = await service.sync_connection(connection_id, SyncOptions())
        return {
            'success': result.success,
            'connection': service.get_connection(connection_id),
            'sync': result.to_dict(),
        }
    except AdapterError as e:
        raise http_error(e)


# Connections

@router.get("/connections")
async def list_connections(org_id: str = Query(...),
                           api_key: str = Depends(verify_api_key),
                           service: ConnectionSyncService = Depends(get_sync_service)):
    try:
        connections = service.list_connections(org_id)
        return {'success': True, 'connections': connections, 'count': len(connections)}
    except AdapterError as e:
        raise http_error(e)


@router.get("/connections/{connection_id}")
async def get_connection(connection_id: str,
                         user_id: str = Query(...),
                         api_key: str = Depends(verify_api_key),
                         service: ConnectionSyncService = Depends(get_sync_service)):
    try:
        return {
            'success': True,
            'connection': service.get_connection(connection_id, user_id),
            'sync_status': service.get_sync_status(connection_id, user_id),
        }
    except AdapterError as e:
        raise http_error(e)


@router.delete("/connections/{connection_id}")
async def delete_connection(connection_id: str,
                            user_id: str = Query(...),
                            api_key: str = Depends(verify_api_key),
                            service: ConnectionSyncService = Depends(get_sync_service)):
    try:
        service.delete_connection(connection_id, user_id)
        return {'success': True, 'connection_id': connection_id}
    except AdapterError as e:
        raise http_error(e)


@router.post("/connections/{connection_id}/sync")
async def sync_connection(connection_id: str,
                          user_id: str = Query(...),
                          request: Optional[SyncRequest] = None,
                          api_key: str = Depends(verify_api_key),
                          service: ConnectionSyncService = Depends(get_sync_service)):
    request = request or SyncRequest()
    try:
        result = await service.sync_connection(connection_id, SyncOptions(
            replace_snapshot=request.replace_snapshot,
            force_refresh=request.force_refresh,
            skip_instrument_creation=request.skip_instrument_creation,
        ), user_id=user_id)
        return result.to_dict()
    except AdapterError as e:
        raise http_error(e)


# E*TRADE OAuth

@router.post("/etrade/auth")
async def start_etrade_auth(request: ETradeAuthRequest,
                            api_key: str = Depends(verify_api_key),
                            service: ConnectionSyncService = Depends(get_sync_service)):
    """Get a request token and the URL where the user authorizes access."""
    try:
        authorization = await service.begin_authorization(BrokerKind.ETRADE.value, request.callback_url)
        return {'success': True, **authorization}
    except AdapterError as e:
        raise http_error(e)


@router.post("/etrade/callback")
async def finish_etrade_auth(request: ETradeCallbackRequest,
                             api_key: str = Depends(verify_api_key),
                             service: ConnectionSyncService = Depends(get_sync_service)):
    """Exchange the verifier for access tokens, then create (or re-authenticate) and sync the connection."""
    auth_input = {
        'verifier': request.oauth_verifier,
        'oauth_state': request.oauth_state,
        'request_token': request.request_token,
        'request_token_secret': request.request_token_secret,
    }
    try:
        if request.connection_id:
            await service.reconnect_connection(request.connection_id, request.user_id, auth_input)
            connection_id = request.connection_id
        else:
            created = await service.create_connection(
                request.org_id, request.user_id, BrokerKind.ETRADE.value, auth_input
            )
            connection_id = created['connection_id']
        result = await service.sync_connection(connection_id, SyncOptions())
        return {
            'success': result.success,
            'connection': service.get_connection(connection_id),
            'sync': result.to_dict(),
        }
    except AdapterError as e:
        raise http_error(e)


# Positions

@router.get("/positions")
async def get_positions(org_id: str = Query(...),
                        broker: Optional[str] = Query(None),
                        account_id: Optional[str] = Query(None),
                        asset_class: Optional[AssetClass] = Query(None),
                        symbol: Optional[str] = Query(None),
                        options_only: bool = Query(False),
                        as_of: Optional[datetime] = Query(None),
                        api_key: str = Depends(verify_api_key),
                        service: AggregatedPositionsService = Depends(get_positions_service)):
    try:
        positions = service.get_aggregated_positions(PositionFilters(
            org_id=org_id, broker=broker, account_id=account_id, asset_class=asset_class,
            symbol=symbol, options_only=options_only, as_of=as_of,
        ))
        return {'success': True, 'positions': [p.to_dict() for p in positions], 'count': len(positions)}
    except AdapterError as e:
        raise http_error(e)


@router.get("/positions/summary")
async def get_portfolio_summary(org_id: str = Query(...),
                                as_of: Optional[datetime] = Query(None),
                                api_key: str = Depends(verify_api_key),
                                service: AggregatedPositionsService = Depends(get_positions_service)):
    try:
        return {'success': True, 'summary': service.get_portfolio_summary(org_id, as_of)}
    except AdapterError as e:
        raise http_error(e)


@router.get("/positions/{instrument_id}")
async def get_position_details(instrument_id: str,
                               org_id: str = Query(...),
                               as_of: Optional[datetime] = Query(None),
                               api_key: str = Depends(verify_api_key),
                               service: AggregatedPositionsService = Depends(get_positions_service)):
    try:
        position = service.get_position_details(org_id, instrument_id, as_of)
    except AdapterError as e:
        raise http_error(e)
    if position is None:
        raise HTTPException(status_code=404, detail=f"No holdings for instrument {instrument_id}")
    return {'success': True, 'position': position.to_dict()}
