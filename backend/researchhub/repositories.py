"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
studies and their blocks, applications, sessions and responses,
recordings, points, templates and reviews). Repositories return
SQLModel objects and perform commits/refreshes where appropriate.
"""

from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from sqlmodel import Session, select
from sqlalchemy import func, or_
from . import models


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def save(self, user: models.User) -> models.User:
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_email(self, email: str) -> Optional[models.User]:
        """Return a `User` by email (case-insensitive) or `None` if not found."""
        stmt = select(models.User).where(func.lower(models.User.email) == email.strip().lower())
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def list(self, role: Optional[str] = None, status: Optional[str] = None, search: Optional[str] = None) -> List[models.User]:
        """List users newest first, optionally filtered by role, status and a search term."""
        stmt = select(models.User)
        if role:
            stmt = stmt.where(models.User.role == role)
        if status:
            stmt = stmt.where(models.User.status == status)
        if search:
            like = f"%{search.strip().lower()}%"
            stmt = stmt.where(or_(
                func.lower(models.User.email).like(like),
                func.lower(models.User.first_name).like(like),
                func.lower(models.User.last_name).like(like),
            ))
        stmt = stmt.order_by(models.User.created_at.desc(), models.User.id.desc())
        return self.session.exec(stmt).all()

    def count_active_since(self, since: datetime) -> int:
        stmt = select(func.count()).select_from(models.User).where(models.User.last_login_at >= since)
        return self.session.exec(stmt).one()

    def count_by_role(self) -> dict:
        stmt = select(models.User.role, func.count()).group_by(models.User.role)
        return {role: count for role, count in self.session.exec(stmt).all()}

    def delete(self, user: models.User) -> None:
        self.session.delete(user)
        self.session.commit()


class StudyRepository:
    """CRUD operations for `Study` and its ordered `StudyBlock` rows."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, study: models.Study, blocks: List[models.StudyBlock]) -> models.Study:
        """Create a study and attach provided blocks.

        The function commits the study first to obtain an id, then
        assigns that id and a position to each block before committing them.
        """
        self.session.add(study)
        self.session.commit()
        self.session.refresh(study)
        for pos, b in enumerate(blocks):
            b.study_id = study.id
            b.position = pos
            self.session.add(b)
        self.session.commit()
        return study

    def save(self, study: models.Study) -> models.Study:
        self.session.add(study)
        self.session.commit()
        self.session.refresh(study)
        return study

    def get(self, study_id: int) -> Optional[models.Study]:
        """Fetch a study by id."""
        return self.session.get(models.Study, study_id)

    def list(self, researcher_id: Optional[int] = None, status: Optional[str] = None,
             search: Optional[str] = None, offset: int = 0, limit: int = 20) -> Tuple[List[models.Study], int]:
        """Return one page of studies (newest first) and the total matching count."""
        conditions = []
        if researcher_id is not None:
            conditions.append(models.Study.researcher_id == researcher_id)
        if status:
            conditions.append(models.Study.status == status)
        if search:
            conditions.append(func.lower(models.Study.title).like(f"%{search.strip().lower()}%"))
        stmt = select(models.Study)
        count_stmt = select(func.count()).select_from(models.Study)
        for cond in conditions:
            stmt = stmt.where(cond)
            count_stmt = count_stmt.where(cond)
        total = self.session.exec(count_stmt).one()
        stmt = stmt.order_by(models.Study.created_at.desc(), models.Study.id.desc())
        items = self.session.exec(stmt.offset(offset).limit(limit)).all()
        return items, total

    def count_by_status(self, researcher_id: Optional[int] = None) -> dict:
        stmt = select(models.Study.status, func.count()).group_by(models.Study.status)
        if researcher_id is not None:
            stmt = stmt.where(models.Study.researcher_id == researcher_id)
        return {status: count for status, count in self.session.exec(stmt).all()}

    def list_blocks(self, study_id: int) -> List[models.StudyBlock]:
        """List a study's blocks in display order."""
        stmt = select(models.StudyBlock).where(models.StudyBlock.study_id == study_id).order_by(models.StudyBlock.position, models.StudyBlock.id)
        return self.session.exec(stmt).all()

    def get_block(self, block_id: int) -> Optional[models.StudyBlock]:
        return self.session.get(models.StudyBlock, block_id)

    def add_blocks(self, study_id: int, blocks: List[models.StudyBlock]) -> List[models.StudyBlock]:
        """Append blocks after the study's current last block."""
        start = len(self.list_blocks(study_id))
        for i, b in enumerate(blocks):
            b.study_id = study_id
            b.position = start + i
            self.session.add(b)
        self.session.commit()
        for b in blocks:
            self.session.refresh(b)
        return blocks

    def replace_blocks(self, study_id: int, blocks: List[models.StudyBlock]) -> List[models.StudyBlock]:
        """Make `blocks` the study's block list.

        Blocks carrying an id of an existing block are updated in place,
        new ones are inserted, and existing blocks that are not listed are
        deleted together with their responses.
        """
        existing = {b.id: b for b in self.list_blocks(study_id)}
        kept_ids = set()
        for pos, b in enumerate(blocks):
            current = existing.get(b.id) if b.id is not None else None
            if current is not None:
                current.block_type = b.block_type
                current.title = b.title
                current.description = b.description
                current.settings = dict(b.settings)
                current.position = pos
                self.session.add(current)
                kept_ids.add(current.id)
            else:
                b.id = None
                b.study_id = study_id
                b.position = pos
                self.session.add(b)
        for block_id, block in existing.items():
            if block_id not in kept_ids:
                for r in self.session.exec(select(models.BlockResponse).where(models.BlockResponse.block_id == block_id)).all():
                    self.session.delete(r)
                self.session.delete(block)
        self.session.commit()
        return self.list_blocks(study_id)

    def delete(self, study: models.Study) -> None:
        """Delete a study together with every row that references it."""
        sessions = self.session.exec(select(models.StudySession).where(models.StudySession.study_id == study.id)).all()
        session_ids = [s.id for s in sessions]
        if session_ids:
            for r in self.session.exec(select(models.BlockResponse).where(models.BlockResponse.session_id.in_(session_ids))).all():
                self.session.delete(r)
        for rec in self.session.exec(select(models.Recording).where(models.Recording.study_id == study.id)).all():
            self.session.delete(rec)
        for s in sessions:
            self.session.delete(s)
        for a in self.session.exec(select(models.StudyApplication).where(models.StudyApplication.study_id == study.id)).all():
            self.session.delete(a)
        for b in self.list_blocks(study.id):
            self.session.delete(b)
        self.session.delete(study)
        self.session.commit()


class ApplicationRepository:
    """Persist and query `StudyApplication` rows."""
    def __init__(self, session: Session):
        self.session = session

    def save(self, application: models.StudyApplication) -> models.StudyApplication:
        self.session.add(application)
        self.session.commit()
        self.session.refresh(application)
        return application

    def get(self, application_id: int) -> Optional[models.StudyApplication]:
        return self.session.get(models.StudyApplication, application_id)

    def get_for_participant(self, study_id: int, participant_id: int) -> Optional[models.StudyApplication]:
        """Return the participant's most recent application for a study."""
        stmt = select(models.StudyApplication).where(
            models.StudyApplication.study_id == study_id,
            models.StudyApplication.participant_id == participant_id,
        ).order_by(models.StudyApplication.applied_at.desc(), models.StudyApplication.id.desc())
        return self.session.exec(stmt).first()

    def list_for_participant(self, participant_id: int) -> List[models.StudyApplication]:
        stmt = select(models.StudyApplication).where(models.StudyApplication.participant_id == participant_id).order_by(models.StudyApplication.applied_at.desc(), models.StudyApplication.id.desc())
        return self.session.exec(stmt).all()

    def list_for_study(self, study_id: int, status: Optional[str] = None, offset: int = 0, limit: int = 20) -> Tuple[List[models.StudyApplication], int]:
        conditions = [models.StudyApplication.study_id == study_id]
        if status:
            conditions.append(models.StudyApplication.status == status)
        total = self.session.exec(select(func.count()).select_from(models.StudyApplication).where(*conditions)).one()
        stmt = select(models.StudyApplication).where(*conditions).order_by(models.StudyApplication.applied_at.desc(), models.StudyApplication.id.desc())
        return self.session.exec(stmt.offset(offset).limit(limit)).all(), total

    def count_by_status(self, study_id: int) -> dict:
        stmt = select(models.StudyApplication.status, func.count()).where(models.StudyApplication.study_id == study_id).group_by(models.StudyApplication.status)
        return {status: count for status, count in self.session.exec(stmt).all()}


class SessionRepository:
    """Study sessions and the block responses recorded inside them."""
    def __init__(self, session: Session):
        self.session = session

    def save(self, study_session: models.StudySession) -> models.StudySession:
        self.session.add(study_session)
        self.session.commit()
        self.session.refresh(study_session)
        return study_session

    def get(self, session_id: int) -> Optional[models.StudySession]:
        return self.session.get(models.StudySession, session_id)

    def get_active(self, study_id: int, participant_id: int) -> Optional[models.StudySession]:
        stmt = select(models.StudySession).where(
            models.StudySession.study_id == study_id,
            models.StudySession.participant_id == participant_id,
            models.StudySession.status == 'active',
        )
        return self.session.exec(stmt).first()

    def count_for_participant(self, participant_id: int, status: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(models.StudySession).where(models.StudySession.participant_id == participant_id)
        if status:
            stmt = stmt.where(models.StudySession.status == status)
        return self.session.exec(stmt).one()

    def list_for_study(self, study_id: int) -> List[models.StudySession]:
        stmt = select(models.StudySession).where(models.StudySession.study_id == study_id).order_by(models.StudySession.started_at)
        return self.session.exec(stmt).all()

    def list_for_studies(self, study_ids: Sequence[int]) -> List[models.StudySession]:
        if not study_ids:
            return []
        stmt = select(models.StudySession).where(models.StudySession.study_id.in_(list(study_ids)))
        return self.session.exec(stmt).all()

    def get_response(self, session_id: int, block_id: int) -> Optional[models.BlockResponse]:
        stmt = select(models.BlockResponse).where(
            models.BlockResponse.session_id == session_id,
            models.BlockResponse.block_id == block_id,
        )
        return self.session.exec(stmt).first()

    def save_response(self, response: models.BlockResponse) -> models.BlockResponse:
        self.session.add(response)
        self.session.commit()
        self.session.refresh(response)
        return response

    def list_responses(self, session_id: int) -> List[models.BlockResponse]:
        stmt = select(models.BlockResponse).where(models.BlockResponse.session_id == session_id).order_by(models.BlockResponse.created_at, models.BlockResponse.id)
        return self.session.exec(stmt).all()

    def list_responses_for_study(self, study_id: int) -> List[models.BlockResponse]:
        stmt = (
            select(models.BlockResponse)
            .join(models.StudySession, models.StudySession.id == models.BlockResponse.session_id)
            .where(models.StudySession.study_id == study_id)
            .order_by(models.BlockResponse.session_id, models.BlockResponse.id)
        )
        return self.session.exec(stmt).all()

    def count_responses(self) -> int:
        return self.session.exec(select(func.count()).select_from(models.BlockResponse)).one()


class RecordingRepository:
    """Metadata rows for uploaded recordings."""
    def __init__(self, session: Session):
        self.session = session

    def save(self, recording: models.Recording) -> models.Recording:
        self.session.add(recording)
        self.session.commit()
        self.session.refresh(recording)
        return recording

    def get(self, recording_id: int) -> Optional[models.Recording]:
        return self.session.get(models.Recording, recording_id)

    def list(self, study_id: Optional[int] = None, participant_id: Optional[int] = None) -> List[models.Recording]:
        stmt = select(models.Recording)
        if study_id is not None:
            stmt = stmt.where(models.Recording.study_id == study_id)
        if participant_id is not None:
            stmt = stmt.where(models.Recording.participant_id == participant_id)
        return self.session.exec(stmt.order_by(models.Recording.created_at.desc(), models.Recording.id.desc())).all()

    def delete(self, recording: models.Recording) -> None:
        self.session.delete(recording)
        self.session.commit()


class PointsRepository:
    """Balances and ledger entries for the points system."""
    def __init__(self, session: Session):
        self.session = session

    def get_balance(self, user_id: int) -> Optional[models.PointsBalance]:
        return self.session.get(models.PointsBalance, user_id)

    def add(self, *rows) -> None:
        """Stage rows and commit them in one transaction."""
        for r in rows:
            self.session.add(r)
        self.session.commit()
        for r in rows:
            self.session.refresh(r)

    def list_transactions(self, user_id: int, offset: int = 0, limit: int = 50) -> List[models.PointsTransaction]:
        stmt = select(models.PointsTransaction).where(models.PointsTransaction.user_id == user_id).order_by(
            models.PointsTransaction.created_at.desc(), models.PointsTransaction.id.desc()
        )
        return self.session.exec(stmt.offset(offset).limit(limit)).all()

    def list_balances(self) -> List[models.PointsBalance]:
        stmt = select(models.PointsBalance).order_by(models.PointsBalance.total_points.desc())
        return self.session.exec(stmt).all()

    def list_expirable(self, now: datetime) -> List[models.PointsTransaction]:
        """Assigned transactions whose expiry has passed and that were not swept yet."""
        stmt = select(models.PointsTransaction).where(
            models.PointsTransaction.tx_type == 'assigned',
            models.PointsTransaction.expiry_processed == False,  # noqa: E712
            models.PointsTransaction.expires_at.is_not(None),
            models.PointsTransaction.expires_at <= now,
        ).order_by(models.PointsTransaction.expires_at, models.PointsTransaction.id)
        return self.session.exec(stmt).all()


class TemplateRepository:
    """Community templates and their reviews."""
    def __init__(self, session: Session):
        self.session = session

    def save(self, template: models.Template) -> models.Template:
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        return template

    def get(self, template_id: int) -> Optional[models.Template]:
        return self.session.get(models.Template, template_id)

    def list_public(self, category: Optional[str] = None, search: Optional[str] = None, sort: str = 'popular') -> List[models.Template]:
        stmt = select(models.Template).where(models.Template.is_public == True)  # noqa: E712
        if category:
            stmt = stmt.where(models.Template.category == category)
        if search:
            stmt = stmt.where(func.lower(models.Template.title).like(f"%{search.strip().lower()}%"))
        if sort == 'rating':
            stmt = stmt.order_by(models.Template.average_rating.desc(), models.Template.review_count.desc())
        elif sort == 'recent':
            stmt = stmt.order_by(models.Template.created_at.desc(), models.Template.id.desc())
        else:
            stmt = stmt.order_by(models.Template.usage_count.desc(), models.Template.id)
        return self.session.exec(stmt).all()

    def save_review(self, review: models.TemplateReview) -> models.TemplateReview:
        self.session.add(review)
        self.session.commit()
        self.session.refresh(review)
        return review

    def get_review(self, template_id: int, review_id: int) -> Optional[models.TemplateReview]:
        stmt = select(models.TemplateReview).where(
            models.TemplateReview.id == review_id,
            models.TemplateReview.template_id == template_id,
        )
        return self.session.exec(stmt).first()

    def get_review_by_reviewer(self, template_id: int, reviewer_id: int) -> Optional[models.TemplateReview]:
        stmt = select(models.TemplateReview).where(
            models.TemplateReview.template_id == template_id,
            models.TemplateReview.reviewer_id == reviewer_id,
        )
        return self.session.exec(stmt).first()

    def list_reviews(self, template_id: int, sort: str = 'recent', offset: int = 0, limit: int = 10) -> List[models.TemplateReview]:
        stmt = select(models.TemplateReview).where(
            models.TemplateReview.template_id == template_id,
            models.TemplateReview.is_approved == True,  # noqa: E712
        )
        if sort == 'helpful':
            stmt = stmt.order_by(models.TemplateReview.helpful_count.desc(), models.TemplateReview.id.desc())
        elif sort == 'rating_high':
            stmt = stmt.order_by(models.TemplateReview.rating.desc(), models.TemplateReview.id.desc())
        elif sort == 'rating_low':
            stmt = stmt.order_by(models.TemplateReview.rating.asc(), models.TemplateReview.id.desc())
        else:
            stmt = stmt.order_by(models.TemplateReview.created_at.desc(), models.TemplateReview.id.desc())
        return self.session.exec(stmt.offset(offset).limit(limit)).all()

    def approved_ratings(self, template_id: int) -> List[int]:
        stmt = select(models.TemplateReview.rating).where(
            models.TemplateReview.template_id == template_id,
            models.TemplateReview.is_approved == True,  # noqa: E712
        )
        return list(self.session.exec(stmt).all())

    def delete_review(self, review: models.TemplateReview) -> None:
        self.session.delete(review)
        self.session.commit()
