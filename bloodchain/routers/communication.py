"""
Communication Router - API endpoints for the hash-chained message ledger
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from bloodchain.config import Settings
from bloodchain.database import get_db
from bloodchain.dependencies import (
    get_app_settings,
    get_attachment_store,
    get_current_admin,
    get_current_org,
    get_ledger,
    get_notifier,
)
from bloodchain.exceptions import AuthorizationError, NotFoundError
from bloodchain.models import Organization, Conversation, Message, MessageAttachment, IntegrityIncident
from bloodchain.schemas import (
    ConversationHeadResponse,
    ConversationResponse,
    DataResponse,
    IncidentResponse,
    MessageResponse,
    UnreadCountResponse,
    VerificationResponse,
)
from bloodchain.services import conversation_index
from bloodchain.services.attachments import AttachmentStore, IncomingAttachment
from bloodchain.services.chain_builder import MessageLedger
from bloodchain.services.chain_verifier import ChainVerifier
from bloodchain.services.notifier import RealtimeNotifier


router = APIRouter()


@router.post("/send", response_model=DataResponse[MessageResponse], status_code=status.HTTP_201_CREATED)
async def send_message(
    receiver_id: str = Form(..., alias="receiverId"),
    message_type: str = Form("text", alias="messageType"),
    content: str = Form(""),
    sos_id: Optional[str] = Form(None, alias="sosId"),
    attachments: Optional[List[UploadFile]] = File(None),
    org: Organization = Depends(get_current_org),
    ledger: MessageLedger = Depends(get_ledger),
    notifier: RealtimeNotifier = Depends(get_notifier),
    settings: Settings = Depends(get_app_settings),
):
    """
    Append a message to the conversation with `receiverId`

    Multipart form; attachments are optional files (documents and images).
    """
    incoming = []
    for upload in attachments or []:
        # One byte over the limit is enough for the size check to reject it
        data = await upload.read(settings.max_attachment_bytes + 1)
        incoming.append(IncomingAttachment(
            file_name=upload.filename or "attachment",
            content_type=upload.content_type or "",
            data=data,
        ))

    message = await run_in_threadpool(
        ledger.append,
        sender=org,
        receiver_id=receiver_id,
        message_type=message_type,
        content=content,
        attachments=incoming,
        sos_id=sos_id,
    )
    await notifier.publish_appended(message)
    return DataResponse(data=MessageResponse.model_validate(message))


@router.get("/conversations", response_model=DataResponse[List[ConversationResponse]])
async def list_conversations(
    org: Organization = Depends(get_current_org),
    db: Session = Depends(get_db),
):
    """Conversation summaries for the caller's organization"""
    summaries = conversation_index.list_conversations(db, org.id)
    return DataResponse(data=[ConversationResponse.model_validate(s) for s in summaries])


@router.get("/conversation/{partner_id}", response_model=DataResponse[List[MessageResponse]])
async def get_conversation_messages(
    partner_id: str,
    org: Organization = Depends(get_current_org),
    db: Session = Depends(get_db),
):
    """Messages exchanged with `partner_id`, in ledger order"""
    messages = conversation_index.conversation_messages(db, org.id, partner_id)
    return DataResponse(data=[MessageResponse.model_validate(m) for m in messages])


@router.get("/sos/{sos_id}/audit", response_model=DataResponse[List[MessageResponse]])
async def get_sos_audit_trail(
    sos_id: str,
    verify: bool = False,
    org: Organization = Depends(get_current_org),
    db: Session = Depends(get_db),
):
    """
    Every message tagged with an SOS, across conversations

    With `verify=true` each conversation in the trail is verified first and
    a broken chain fails the request instead of serving the trail.
    """
    messages = conversation_index.sos_audit_trail(db, sos_id, org)

    if verify:
        verifier = ChainVerifier(db)
        for conversation_id in dict.fromkeys(m.conversation_id for m in messages):
            verifier.verify(conversation_id, detected_by=org.id).raise_for_broken()

    return DataResponse(data=[MessageResponse.model_validate(m) for m in messages])


@router.post("/message/{message_id}/read", response_model=DataResponse[MessageResponse])
async def mark_message_as_read(
    message_id: str,
    org: Organization = Depends(get_current_org),
    db: Session = Depends(get_db),
    notifier: RealtimeNotifier = Depends(get_notifier),
):
    """Mark a received message read; repeating the call changes nothing"""
    message, changed = conversation_index.mark_read(db, message_id, org.id)
    if changed:
        await notifier.publish_read(message)
    return DataResponse(data=MessageResponse.model_validate(message))


@router.get("/conversation/{conversation_id}/verify", response_model=DataResponse[VerificationResponse])
async def verify_chain_integrity(
    conversation_id: str,
    org: Organization = Depends(get_current_org),
    db: Session = Depends(get_db),
):
    """Audit a conversation's hash chain"""
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None and not org.is_admin:
        raise NotFoundError(f"Conversation not found: {conversation_id}")
    if conversation is not None and not (org.is_admin or conversation.has_participant(org.id)):
        raise AuthorizationError("Not a participant of this conversation")

    report = ChainVerifier(db).verify(conversation_id, detected_by=org.id)
    return DataResponse(data=VerificationResponse(
        is_valid=report.is_valid,
        message_count=report.message_count,
        broken_at=report.broken_at,
    ))


@router.get("/unread-count", response_model=DataResponse[UnreadCountResponse])
async def get_unread_count(
    org: Organization = Depends(get_current_org),
    db: Session = Depends(get_db),
):
    """Unread messages addressed to the caller"""
    return DataResponse(data=UnreadCountResponse(count=conversation_index.unread_count(db, org.id)))


@router.get("/attachments/{digest}")
async def download_attachment(
    digest: str,
    org: Organization = Depends(get_current_org),
    db: Session = Depends(get_db),
    store: AttachmentStore = Depends(get_attachment_store),
):
    """Attachment bytes, for participants of a message that carries them"""
    query = db.query(MessageAttachment)\
        .join(Message, Message.id == MessageAttachment.message_id)\
        .filter(MessageAttachment.sha256 == digest)
    if not org.is_admin:
        query = query.filter((Message.sender_id == org.id) | (Message.receiver_id == org.id))
    attachment = query.first()
    if attachment is None:
        raise NotFoundError("Attachment not found")

    path = store.open(digest)
    return FileResponse(path, media_type=attachment.file_type, filename=attachment.file_name)


@router.get("/admin/incidents", response_model=DataResponse[List[IncidentResponse]])
async def list_integrity_incidents(
    conversation_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    admin: Organization = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """Broken chains found by verification, newest first"""
    query = db.query(IntegrityIncident)
    if conversation_id:
        query = query.filter(IntegrityIncident.conversation_id == conversation_id)
    incidents = query\
        .order_by(IntegrityIncident.detected_at.desc())\
        .offset(skip)\
        .limit(limit)\
        .all()
    return DataResponse(data=[IncidentResponse.model_validate(i) for i in incidents])


@router.post("/admin/conversation/{conversation_id}/rebuild", response_model=DataResponse[ConversationHeadResponse])
async def rebuild_conversation(
    conversation_id: str,
    admin: Organization = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """Recompute a conversation's summary and unread counters from its messages"""
    conversation = conversation_index.rebuild(db, conversation_id)
    return DataResponse(data=ConversationHeadResponse.model_validate(conversation))
