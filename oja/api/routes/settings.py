from dataclasses import replace
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from api.middleware.auth import require_client_token

router = APIRouter()


class ProviderUpdate(BaseModel):
    primary: Optional[str] = None    # "gemini" or "openai"
    secondary: Optional[str] = None


class APIKeyUpdate(BaseModel):
    gemini: Optional[str] = None
    openai: Optional[str] = None
    azure_speech: Optional[str] = None
    azure_region: Optional[str] = None
    google_cloud: Optional[str] = None


class VoiceUpdate(BaseModel):
    tts_enabled: Optional[bool] = None
    voice_gender: Optional[str] = None  # "MALE" or "FEMALE"


class ConversationUpdate(BaseModel):
    continuous: Optional[bool] = None


def _mask(value: str) -> str:
    if not value:
        return value
    return value[:4] + "****" + value[-4:] if len(value) > 8 else "****"


@router.get("/")
async def get_settings(request: Request, _=Depends(require_client_token)):
    """Get all current settings, with secrets masked."""
    config = request.app.state.config_manager.config
    data = config.model_dump()
    for key in ("gemini", "openai", "azure_speech", "google_cloud"):
        data["api_keys"][key] = _mask(data["api_keys"][key])
    data["backend"]["token"] = _mask(data["backend"]["token"])
    data["api"]["token"] = _mask(data["api"]["token"])
    return data


@router.put("/providers")
async def update_providers(body: ProviderUpdate, request: Request, _=Depends(require_client_token)):
    """Select language-model providers. Takes effect on restart."""
    updates = body.model_dump(exclude_none=True)
    for name in updates.values():
        if name not in ("gemini", "openai"):
            return {"error": "Provider must be 'gemini' or 'openai'"}

    cm = request.app.state.config_manager
    if updates:
        cm.update_nested("providers", **updates)
    return {"status": "updated", "providers": cm.config.providers.model_dump()}


@router.put("/api-keys")
async def update_api_keys(body: APIKeyUpdate, request: Request, _=Depends(require_client_token)):
    """Update provider API keys. Takes effect on restart."""
    cm = request.app.state.config_manager
    updates = body.model_dump(exclude_none=True)
    if updates:
        cm.update_nested("api_keys", **updates)
    return {"status": "updated"}


@router.put("/voice")
async def update_voice(body: VoiceUpdate, request: Request, _=Depends(require_client_token)):
    """Toggle spoken responses or change the voice."""
    if body.voice_gender is not None and body.voice_gender not in ("MALE", "FEMALE"):
        return {"error": "Voice gender must be 'MALE' or 'FEMALE'"}

    cm = request.app.state.config_manager
    updates = body.model_dump(exclude_none=True)
    if updates:
        cm.update_nested("voice", **updates)

    speech = request.app.state.assistant.speech
    speech.enabled = cm.tts_enabled
    speech.voice = replace(speech.voice, gender=cm.config.voice.voice_gender)
    if not speech.enabled:
        speech.stop()
    return {"status": "updated", "voice": cm.config.voice.model_dump()}


@router.put("/conversation")
async def update_conversation(body: ConversationUpdate, request: Request, _=Depends(require_client_token)):
    """Toggle continuous conversation."""
    cm = request.app.state.config_manager
    updates = body.model_dump(exclude_none=True)
    if updates:
        cm.update_nested("conversation", **updates)

    continuous = request.app.state.assistant.continuous
    continuous.enabled = cm.continuous_enabled
    if not continuous.enabled:
        continuous.cancel()
    return {"status": "updated", "conversation": cm.config.conversation.model_dump()}
