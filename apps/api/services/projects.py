"""Video project lookups and creation gated by the credit ledger."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.video_project import VideoProject
from services.ledger_errors import LedgerNotFoundError

logger = logging.getLogger(__name__)


async def resolve_project_owner(project_id: str, db: AsyncSession) -> str:
    """Return the owning user id of a project or raise a not-found error."""
    result = await db.execute(select(VideoProject.user_id).where(VideoProject.id == project_id))
    owner_id = result.scalar_one_or_none()
    if owner_id is None:
        raise LedgerNotFoundError("project", project_id)
    return str(owner_id)


async def get_project(user_id: str, project_id: str, db: AsyncSession) -> VideoProject:
    result = await db.execute(
        select(VideoProject).where(
            VideoProject.id == project_id,
            VideoProject.user_id == user_id,
        )
    )
    project = result.scalar_one_or_none()
    if not project:
        raise LedgerNotFoundError("project", project_id)
    return project


async def create_video_project(
    user_id: str,
    *,
    video_url: str,
    prompt: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Create a project and charge its edit in one transaction.

    When the user has neither credits nor an active subscription nothing is
    written and the insufficient-credits error propagates.
    """
    from services.credits import debit_edit_credit

    project_id = str(uuid.uuid4())
    try:
        charge = await debit_edit_credit(user_id, project_id, db, now=now)
        project = VideoProject(
            id=project_id,
            user_id=user_id,
            original_video_url=video_url,
            prompt=prompt,
            status="processing",
        )
        db.add(project)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("video_project_created user=%s project=%s charged=%s", user_id, project_id, charge.charged)
    return {
        "projectId": project_id,
        "status": "processing",
        "credits": charge.to_dict(),
    }


def serialize_project(project: VideoProject) -> Dict[str, Any]:
    return {
        "id": project.id,
        "originalVideoUrl": project.original_video_url,
        "editedVideoUrl": project.edited_video_url,
        "prompt": project.prompt,
        "status": project.status,
        "title": project.title,
        "description": project.description,
        "hashtags": project.hashtags,
        "thumbnailUrl": project.thumbnail_url,
        "musicUrl": project.music_url,
        "createdAt": project.created_at.isoformat() if project.created_at else None,
    }
