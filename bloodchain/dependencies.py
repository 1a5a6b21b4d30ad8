"""
FastAPI dependencies shared by the routers
"""
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from bloodchain.config import Settings
from bloodchain.database import get_db
from bloodchain.exceptions import AuthorizationError
from bloodchain.models import Organization
from bloodchain.security import resolve_organization
from bloodchain.services.attachments import AttachmentStore
from bloodchain.services.chain_builder import ConversationLocks, MessageLedger
from bloodchain.services.notifier import RealtimeNotifier

bearer_scheme = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_notifier(request: Request) -> RealtimeNotifier:
    return request.app.state.notifier


def get_attachment_store(request: Request) -> AttachmentStore:
    return request.app.state.attachment_store


def get_ledger(
    request: Request,
    db: Session = Depends(get_db),
) -> MessageLedger:
    locks: ConversationLocks = request.app.state.conversation_locks
    return MessageLedger(db, request.app.state.settings, locks, request.app.state.attachment_store)


async def get_current_org(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> Organization:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    org = resolve_organization(db, credentials.credentials, settings)
    if org is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    structlog.contextvars.bind_contextvars(participant_id=org.id)
    return org


async def get_current_admin(org: Organization = Depends(get_current_org)) -> Organization:
    if not org.is_admin:
        raise AuthorizationError("Admin privileges required")
    return org
