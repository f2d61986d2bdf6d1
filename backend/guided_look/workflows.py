from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from . import auth as auth_utils
from .analytics import LoggingAnalyticsSink
from .auth import CurrentUser
from .closet import SqlGarmentCollection
from .credits.ledger import CreditLedger, utc_now
from .credits.stores import SqlCreditLedgerStore
from .db import get_db
from .providers.registry import get_providers
from .schemas import CreditStatusOut, WorkflowActionIn, WorkflowActionOut
from .settings import settings
from .workflow.confirmation import ConfirmationGate
from .workflow.engine import ActionCosts, WorkflowEngine
from .workflow.messages import SESSION_RESTARTED_MESSAGE, STILL_PROCESSING_MESSAGE
from .workflow.snapshot import WorkflowSnapshot, build_snapshot
from .workflow.state import WorkflowSession
from .workflow.store import (
    SessionInFlight,
    SqlWorkflowSessionStore,
    WorkflowSessionStore,
    is_usable,
    resolve_session,
)


router = APIRouter(prefix="/api/workflow", tags=["workflow"])

# Slack on top of the provider timeout before a running session counts as interrupted.
IN_FLIGHT_MARGIN = timedelta(seconds=30)


async def get_ledger(
    current_user: CurrentUser = Depends(auth_utils.get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CreditLedger:
    return CreditLedger(
        SqlCreditLedgerStore(db),
        current_user.uid,
        tier=current_user.tier,
        tier_limits=settings.tier_limits,
    )


async def get_session_store(db: AsyncSession = Depends(get_db)) -> WorkflowSessionStore:
    return SqlWorkflowSessionStore(db, ttl=timedelta(hours=settings.session_ttl_hours))


async def get_engine(
    current_user: CurrentUser = Depends(auth_utils.get_current_user),
    db: AsyncSession = Depends(get_db),
) -> WorkflowEngine:
    generation_provider, tryon_provider = get_providers()
    return WorkflowEngine(
        generation_provider,
        tryon_provider,
        ConfirmationGate(settings.confirmation_secret),
        costs=ActionCosts(
            look=settings.look_credit_cost,
            edit=settings.edit_credit_cost,
            tryon=settings.tryon_credit_cost,
        ),
        generation_timeout=settings.generation_timeout_seconds,
        tryon_timeout=settings.tryon_timeout_seconds,
        collection=SqlGarmentCollection(db, current_user.uid),
        analytics_sink=LoggingAnalyticsSink(),
    )


@router.post("/actions", response_model=WorkflowActionOut)
async def handle_action(
    body: WorkflowActionIn,
    current_user: CurrentUser = Depends(auth_utils.get_current_user),
    store: WorkflowSessionStore = Depends(get_session_store),
    engine: WorkflowEngine = Depends(get_engine),
    ledger: CreditLedger = Depends(get_ledger),
) -> WorkflowActionOut:
    """Apply one user action to the conversation's workflow session.

    The session is resolved from ``sessionId`` or, failing that, from
    ``conversationId``.  A session that expired or belongs to another
    conversation is replaced by a fresh one and a notice is returned.
    Plain chat turns leave the stored session untouched.
    """
    return await apply_action(body, current_user.uid, store, engine, ledger)


async def apply_action(
    body: WorkflowActionIn,
    user_id: str,
    store: WorkflowSessionStore,
    engine: WorkflowEngine,
    ledger: CreditLedger,
) -> WorkflowActionOut:
    grace = timedelta(seconds=max(engine.generation_timeout, engine.tryon_timeout)) + IN_FLIGHT_MARGIN
    try:
        session, restarted = await resolve_session(
            store,
            user_id,
            session_id=body.session_id,
            conversation_id=body.conversation_id,
            in_flight_grace=grace,
        )
    except SessionInFlight as exc:
        return WorkflowActionOut(
            reply=STILL_PROCESSING_MESSAGE,
            workflow=build_snapshot(exc.session),
            notice=STILL_PROCESSING_MESSAGE,
            credits=CreditStatusOut.from_status(await ledger.get_status()),
        )

    async def claim(confirmed: WorkflowSession, token: str) -> bool:
        return await store.claim(user_id, confirmed, token)

    turn = await engine.handle(session, body.to_request(), ledger, claim=claim)
    if turn.persist and not turn.chat:
        await store.save(user_id, body.conversation_id, turn.session)
    credits = await ledger.get_status()
    return WorkflowActionOut(
        reply=turn.reply,
        chat=turn.chat,
        workflow=build_snapshot(turn.session, turn.credits_used),
        credits_used_this_call=turn.credits_used,
        upgrade_prompt=turn.upgrade_prompt,
        notice=turn.notice or (SESSION_RESTARTED_MESSAGE if restarted else None),
        credits=CreditStatusOut.from_status(credits),
    )


@router.get("/{session_id}", response_model=WorkflowSnapshot)
async def get_workflow(
    session_id: str,
    current_user: CurrentUser = Depends(auth_utils.get_current_user),
    store: WorkflowSessionStore = Depends(get_session_store),
) -> WorkflowSnapshot:
    """Fetch the current snapshot of one of the caller's sessions."""
    stored = await store.get(current_user.uid, session_id)
    if not is_usable(stored, None, utc_now()):
        raise HTTPException(status_code=404, detail="Workflow session not found")
    return build_snapshot(stored.session)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workflow(
    session_id: str,
    current_user: CurrentUser = Depends(auth_utils.get_current_user),
    store: WorkflowSessionStore = Depends(get_session_store),
) -> Response:
    """Discard one of the caller's sessions."""
    if not await store.delete(current_user.uid, session_id):
        raise HTTPException(status_code=404, detail="Workflow session not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
