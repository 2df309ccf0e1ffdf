"""Video project router."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.projects import create_video_project, get_project, serialize_project

router = APIRouter()


class CreateProjectRequest(BaseModel):
    videoUrl: str = Field(min_length=1, max_length=2048)
    prompt: str = Field(min_length=1, max_length=4000)


@router.post("", status_code=201)
async def create_project(
    request: CreateProjectRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Create a project; charges one credit unless the user is subscribed."""
    return await create_video_project(
        auth.user_id,
        video_url=request.videoUrl,
        prompt=request.prompt,
        db=db,
    )


@router.get("/{project_id}")
async def read_project(
    project_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    project = await get_project(auth.user_id, project_id, db)
    return serialize_project(project)
