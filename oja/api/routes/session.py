from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from api.middleware.auth import require_client_token
from core.state import ScreenContext, SessionState

router = APIRouter()


class Utterance(BaseModel):
    text: str


def _assistant(request: Request):
    return request.app.state.assistant


def _require_open(request: Request):
    assistant = _assistant(request)
    if assistant.active_session is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No voice session is open.",
        )
    return assistant


@router.get("/")
async def get_session(request: Request, _=Depends(require_client_token)):
    """Current session state, history and remaining daily quota."""
    return _assistant(request).snapshot()


@router.post("/open")
async def open_session(
    request: Request, body: Optional[ScreenContext] = None, _=Depends(require_client_token)
):
    """Open a session (closing any session that is still open)."""
    assistant = _assistant(request)
    assistant.open(body)
    return assistant.snapshot()


@router.post("/close")
async def close_session(request: Request, _=Depends(require_client_token)):
    """Close the session. Stops capture and speech immediately."""
    assistant = _assistant(request)
    assistant.close()
    return assistant.snapshot()


@router.post("/listen")
async def start_listening(request: Request, _=Depends(require_client_token)):
    """Open the mic for one utterance."""
    assistant = _require_open(request)
    started = await assistant.start_listening()
    return {"listening": started, **assistant.snapshot()}


@router.post("/stop-listening")
async def stop_listening(request: Request, _=Depends(require_client_token)):
    assistant = _require_open(request)
    assistant.stop_listening()
    return assistant.snapshot()


@router.post("/utterance")
async def submit_utterance(body: Utterance, request: Request, _=Depends(require_client_token)):
    """Process a typed (or externally recognised) utterance.

    Returns once the response is known; speech may still be playing.
    """
    assistant = _require_open(request)
    if not await assistant.submit_transcript(body.text):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="The assistant is busy. Try again in a moment.",
        )
    return assistant.snapshot()


@router.post("/confirm")
async def confirm_action(request: Request, _=Depends(require_client_token)):
    """Execute the action awaiting confirmation."""
    assistant = _require_open(request)
    if assistant.active_session.state != SessionState.AWAITING_CONFIRMATION:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Nothing is waiting for confirmation.",
        )
    executed = await assistant.confirm()
    return {"executed": executed, **assistant.snapshot()}


@router.post("/cancel")
async def cancel_action(request: Request, _=Depends(require_client_token)):
    """Drop the action awaiting confirmation."""
    assistant = _require_open(request)
    cancelled = assistant.cancel()
    return {"cancelled": cancelled, **assistant.snapshot()}


@router.post("/reset")
async def reset_conversation(request: Request, _=Depends(require_client_token)):
    """Forget the conversation so far."""
    assistant = _require_open(request)
    assistant.reset_conversation()
    return assistant.snapshot()


@router.put("/context")
async def update_context(body: ScreenContext, request: Request, _=Depends(require_client_token)):
    """Tell the assistant what the user is looking at."""
    assistant = _assistant(request)
    assistant.update_context(body)
    return {"context": body.model_dump()}
