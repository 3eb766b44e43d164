"""
SQLAlchemy database models
"""

import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, ForeignKey, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship
from database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# Project status constants
class ProjectStatus:
    """Constants for project status values"""
    DRAFT = "draft"
    ANALYZING = "analyzing"
    SCENES_READY = "scenes_ready"
    GENERATING = "generating"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def all_statuses(cls):
        """Get list of all project statuses in lifecycle order"""
        return [
            cls.DRAFT,
            cls.ANALYZING,
            cls.SCENES_READY,
            cls.GENERATING,
            cls.MERGING,
            cls.COMPLETED,
            cls.FAILED,
        ]


# Scene status constants
class SceneStatus:
    """Constants for scene status values"""
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class ApiKey(Base):
    """
    Credential for an external paid service.

    Counters are advisory: they only drive the preference order used by
    the key rotator.
    """
    __tablename__ = "api_keys"

    id = Column(String, primary_key=True, default=_uuid)
    service_name = Column(String, nullable=False, index=True)
    api_key = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    usage_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<ApiKey(id={self.id}, service={self.service_name}, active={self.is_active})>"

    @property
    def masked_key(self) -> str:
        """Secret with everything but the last four characters hidden"""
        if not self.api_key:
            return ""
        return f"{'*' * max(len(self.api_key) - 4, 4)}{self.api_key[-4:]}"

    def to_dict(self):
        """Convert key to dictionary (secret masked)"""
        return {
            "id": self.id,
            "service_name": self.service_name,
            "api_key": self.masked_key,
            "is_active": self.is_active,
            "usage_count": self.usage_count,
            "error_count": self.error_count,
            "last_used_at": _iso(self.last_used_at),
            "created_at": _iso(self.created_at),
        }


class Project(Base):
    """
    A script turned into scenes and, eventually, one merged video.

    `output_ref` holds the in-flight render job handle while merging and the
    final video URL once completed.
    """
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=_uuid)
    title = Column(String, nullable=False)
    script = Column(Text, nullable=False)
    language = Column(String, nullable=True)
    dialect = Column(String, nullable=True)
    content_type = Column(String, nullable=True)
    aspect_ratio = Column(String, nullable=False, default="16:9")
    status = Column(String, nullable=False, default=ProjectStatus.DRAFT, index=True)

    # Set once by script analysis
    scene_count = Column(Integer, nullable=False, default=0)

    output_ref = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    scenes = relationship(
        "Scene",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Scene.scene_number",
    )
    images = relationship(
        "ProjectImage",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ProjectImage.created_at",
    )

    def __repr__(self):
        return f"<Project(id={self.id}, status={self.status}, scenes={self.scene_count})>"

    @property
    def render_job_id(self):
        return self.output_ref if self.status == ProjectStatus.MERGING else None

    @property
    def final_video_url(self):
        return self.output_ref if self.status == ProjectStatus.COMPLETED else None

    def to_dict(self, include_scenes: bool = False):
        """Convert project to dictionary"""
        result = {
            "id": self.id,
            "title": self.title,
            "script": self.script,
            "language": self.language,
            "dialect": self.dialect,
            "content_type": self.content_type,
            "aspect_ratio": self.aspect_ratio,
            "status": self.status,
            "scene_count": self.scene_count,
            "render_job_id": self.render_job_id,
            "final_video_url": self.final_video_url,
            "error_message": self.error_message,
            "character_image_url": self.images[0].image_url if self.images else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_scenes:
            result["scenes"] = [scene.to_dict() for scene in self.scenes]
        return result


class Scene(Base):
    """
    One independently generated clip of a project.
    """
    __tablename__ = "scenes"
    __table_args__ = (
        UniqueConstraint("project_id", "scene_number", name="uq_scene_project_number"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    scene_number = Column(Integer, nullable=False)  # 1-based, default merge order

    text_content = Column(Text, nullable=False)
    word_count = Column(Integer, nullable=True)
    estimated_duration = Column(Float, nullable=True)
    character_prompt = Column(Text, nullable=True)

    status = Column(String, nullable=False, default=SceneStatus.PENDING, index=True)
    job_handle = Column(String, nullable=True)  # external generation task id
    retry_count = Column(Integer, nullable=False, default=0)
    asset_url = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    project = relationship("Project", back_populates="scenes")

    def __repr__(self):
        return f"<Scene(id={self.id}, number={self.scene_number}, status={self.status})>"

    def build_prompt(self) -> str:
        """Generation prompt: shared character description followed by the scene text"""
        if self.character_prompt:
            return f"{self.character_prompt}. {self.text_content}"
        return self.text_content

    def to_dict(self):
        """Convert scene to dictionary"""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "scene_number": self.scene_number,
            "text_content": self.text_content,
            "word_count": self.word_count,
            "estimated_duration": self.estimated_duration,
            "character_prompt": self.character_prompt,
            "status": self.status,
            "job_handle": self.job_handle,
            "retry_count": self.retry_count,
            "asset_url": self.asset_url,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ProjectImage(Base):
    """Character reference image uploaded for a project"""
    __tablename__ = "project_images"

    id = Column(String, primary_key=True, default=_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    image_url = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    project = relationship("Project", back_populates="images")

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "image_url": self.image_url,
            "created_at": _iso(self.created_at),
        }
