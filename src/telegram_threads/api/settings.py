"""Server settings API endpoints.

Allows clients to read and update the thread pipeline knobs (page size,
budgets, reply thresholds, media download). Changes are applied
immediately and saved to settings.yaml.
"""

import logging
from dataclasses import asdict, replace
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from .auth_utils import get_authenticated_user
from .deps import get_config
from ..config import ThreadsConfig, save_settings


router = APIRouter(prefix="/settings", tags=["settings"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class SettingsResponse(BaseModel):
    """Current pipeline settings (read-only view)."""

    history_page_size: int
    max_history_pages: int
    history_message_budget: int
    min_reply_count: int
    preview_reply_limit: int
    download_priority: int
    chat_limit: int
    max_concurrent_chats: Optional[int]
    max_reply_depth: int
    download_media: bool


class SettingsUpdate(BaseModel):
    """
    Partial update for pipeline settings.

    Only the fields that are provided will be updated.
    """

    history_page_size: Optional[int] = Field(
        default=None, gt=0, description="Messages requested per history page"
    )
    max_history_pages: Optional[int] = Field(
        default=None, gt=0, description="Page cap per conversation"
    )
    history_message_budget: Optional[int] = Field(
        default=None, gt=0, description="Message cap per conversation"
    )
    min_reply_count: Optional[int] = Field(
        default=None,
        ge=0,
        description="Threads need strictly more replies than this",
    )
    preview_reply_limit: Optional[int] = Field(
        default=None, ge=0, description="Direct replies shown in previews"
    )
    download_priority: Optional[int] = Field(default=None, ge=1, le=32)
    chat_limit: Optional[int] = Field(
        default=None, gt=0, description="Chats listed during discovery"
    )
    max_concurrent_chats: Optional[int] = Field(
        default=None,
        ge=0,
        description="Chats scanned in parallel (0 or null for no limit)",
    )
    max_reply_depth: Optional[int] = Field(default=None, gt=0)
    download_media: Optional[bool] = Field(
        default=None, description="Enable/disable photo and avatar download"
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=SettingsResponse,
    summary="Get current pipeline settings",
)
async def get_settings(
    username: str = Depends(get_authenticated_user),
    config: ThreadsConfig = Depends(get_config),
):
    return SettingsResponse(**asdict(config.settings))


@router.patch(
    "",
    response_model=SettingsResponse,
    summary="Update pipeline settings",
    description="""
    Partially update pipeline settings. Only supplied fields are changed.

    Changes take effect on the next load and are saved to settings.yaml.
    `max_concurrent_chats` of `0` or `null` removes the limit.
    """,
)
async def update_settings(
    body: SettingsUpdate,
    username: str = Depends(get_authenticated_user),
    config: ThreadsConfig = Depends(get_config),
):
    update_data = body.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(status_code=422, detail="No fields provided for update")

    changes = {}
    for name, value in update_data.items():
        if name == "max_concurrent_chats":
            # Treat 0 as "no limit"
            changes[name] = value or None
        elif value is not None:
            changes[name] = value

    # Loads already running keep the settings object they started with
    config.settings = replace(config.settings, **changes)

    try:
        save_settings(config)
        logger.info("Settings saved to %s", config.settings_path)
    except Exception:
        logger.exception("Failed to save settings to file")

    logger.info("Settings updated by %s: %s", username, update_data)
    return SettingsResponse(**asdict(config.settings))
