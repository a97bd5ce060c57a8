"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
the block registry and auxiliary helpers. Services are intentionally
thin: they perform validation, check ownership and roles, execute
domain logic and persist aggregates via repositories. They raise
`ValueError` for invalid input and the domain errors below for
everything the controllers map to other HTTP status codes.
"""

import json
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import jwt
from passlib.context import CryptContext
from sqlmodel import Session, select

from . import blocks as block_registry
from . import models, repositories
from .config import settings
from .utils import audit, storage
from .utils.parsers import parse_file_to_blocks, infer_block_type

logger = logging.getLogger("researchhub.services")

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
MIN_PASSWORD_LENGTH = 6
RECORDING_CONTENT_TYPES = ("video/webm", "video/mp4", "audio/webm", "audio/mpeg", "audio/wav")

STATUS_TRANSITIONS = {
    'draft': ('active', 'archived'),
    'active': ('paused', 'completed'),
    'paused': ('active', 'archived'),
    'completed': ('archived',),
    'archived': (),
}


class NotFoundError(LookupError):
    """The requested record does not exist or is not visible to the caller."""


class PermissionDenied(PermissionError):
    """The caller is authenticated but may not perform the action."""


class ConflictError(Exception):
    """The action conflicts with the current state of a record."""


class PayloadTooLargeError(Exception):
    """An uploaded file or response exceeds the configured limit."""


class UnsupportedMediaError(Exception):
    """Uploaded content does not match an accepted type."""


class InsufficientPointsError(Exception):
    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient points balance: {required} required, {available} available")
        self.required = required
        self.available = available


def aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(dt: Optional[datetime]) -> Optional[str]:
    dt = aware(dt)
    return dt.isoformat() if dt else None


def serialize_user(u: models.User) -> dict:
    return {
        'id': u.id,
        'email': u.email,
        'first_name': u.first_name,
        'last_name': u.last_name,
        'role': u.role,
        'status': u.status,
        'last_login_at': _iso(u.last_login_at),
        'created_at': _iso(u.created_at),
    }


def serialize_block(b: models.StudyBlock) -> dict:
    return {
        'id': b.id,
        'type': b.block_type,
        'position': b.position,
        'title': b.title,
        'description': b.description,
        'settings': b.settings,
    }


def serialize_study(s: models.Study, blocks: Optional[List[models.StudyBlock]] = None) -> dict:
    out = {
        'id': s.id,
        'title': s.title,
        'description': s.description,
        'study_type': s.study_type,
        'status': s.status,
        'researcher_id': s.researcher_id,
        'target_participants': s.target_participants,
        'settings': s.settings or {},
        'created_at': _iso(s.created_at),
        'updated_at': _iso(s.updated_at),
    }
    if blocks is not None:
        types = [b.block_type for b in blocks]
        out['blocks'] = [serialize_block(b) for b in blocks]
        out['estimated_duration'] = block_registry.estimated_duration(types)
        out['complexity'] = block_registry.complexity_stats(types)
    return out


def serialize_application(a: models.StudyApplication, participant: Optional[models.User] = None) -> dict:
    out = {
        'id': a.id,
        'study_id': a.study_id,
        'participant_id': a.participant_id,
        'status': a.status,
        'application_data': a.application_data or {},
        'notes': a.notes,
        'applied_at': _iso(a.applied_at),
        'reviewed_at': _iso(a.reviewed_at),
    }
    if participant is not None:
        out['participant'] = {
            'id': participant.id,
            'email': participant.email,
            'name': participant.full_name or participant.email,
        }
    return out


def serialize_session(s: models.StudySession) -> dict:
    return {
        'id': s.id,
        'study_id': s.study_id,
        'participant_id': s.participant_id,
        'status': s.status,
        'started_at': _iso(s.started_at),
        'completed_at': _iso(s.completed_at),
    }


def public_response(response: Any) -> Any:
    """Response payload as shown to API clients; upload entries keep only name and size."""
    if isinstance(response, dict) and isinstance(response.get('files'), list):
        files = [{'filename': f.get('filename'), 'size_bytes': f.get('size_bytes')}
                 for f in response['files'] if isinstance(f, dict)]
        return dict(response, files=files)
    return response


def serialize_response(r: models.BlockResponse) -> dict:
    return {
        'id': r.id,
        'block_id': r.block_id,
        'block_type': r.block_type,
        'response': public_response(r.response),
        'time_spent': r.time_spent,
        'metadata': r.response_metadata or {},
        'created_at': _iso(r.created_at),
        'updated_at': _iso(r.updated_at),
    }


def serialize_recording(r: models.Recording) -> dict:
    return {
        'id': r.id,
        'session_id': r.session_id,
        'study_id': r.study_id,
        'participant_id': r.participant_id,
        'filename': r.filename,
        'content_type': r.content_type,
        'size_bytes': r.size_bytes,
        'duration_seconds': r.duration_seconds,
        'created_at': _iso(r.created_at),
    }


def serialize_balance(b: models.PointsBalance) -> dict:
    return {
        'user_id': b.user_id,
        'total_points': b.total_points,
        'available_points': b.available_points,
        'used_points': b.used_points,
        'expired_points': b.expired_points,
        'last_updated': _iso(b.last_updated),
    }


def serialize_transaction(t: models.PointsTransaction) -> dict:
    return {
        'id': t.id,
        'user_id': t.user_id,
        'type': t.tx_type,
        'amount': t.amount,
        'balance': t.balance,
        'reason': t.reason,
        'assigned_by': t.assigned_by,
        'study_id': t.study_id,
        'expires_at': _iso(t.expires_at),
        'created_at': _iso(t.created_at),
    }


def serialize_template(t: models.Template) -> dict:
    return {
        'id': t.id,
        'author_id': t.author_id,
        'title': t.title,
        'description': t.description,
        'category': t.category,
        'study_type': t.study_type,
        'blocks': t.blocks or [],
        'is_public': t.is_public,
        'average_rating': t.average_rating,
        'review_count': t.review_count,
        'usage_count': t.usage_count,
        'created_at': _iso(t.created_at),
    }


def serialize_review(r: models.TemplateReview) -> dict:
    return {
        'id': r.id,
        'template_id': r.template_id,
        'reviewer_name': r.reviewer_name,
        'rating': r.rating,
        'title': r.title,
        'comment': r.comment,
        'usage_context': r.usage_context,
        'organization_size': r.organization_size,
        'helpful_count': r.helpful_count,
        'created_at': _iso(r.created_at),
        'updated_at': _iso(r.updated_at),
    }


def build_blocks(items: List[Any]) -> List[models.StudyBlock]:
    """Validate submitted blocks through the registry and build rows.

    Items may be `BlockIn` schemas or plain dicts with the same keys.
    """
    out = []
    for idx, item in enumerate(items):
        data = item.model_dump() if hasattr(item, 'model_dump') else dict(item)
        try:
            built = block_registry.create_block(
                data.get('type') or '',
                data.get('settings') or {},
                title=data.get('title'),
                description=data.get('description'),
            )
        except ValueError as e:
            raise ValueError(f"block {idx}: {e}")
        out.append(models.StudyBlock(
            id=data.get('id'),
            block_type=built['type'],
            title=built['title'],
            description=built['description'],
            settings=built['settings'],
        ))
    return out


def _clean_email(email: Optional[str]) -> str:
    email = (email or '').strip().lower()
    if '@' not in email or len(email) > 254:
        raise ValueError('a valid email is required')
    return email


def _page_args(page: int, limit: int, max_limit: int = 100) -> tuple:
    if page < 1:
        raise ValueError('page must be >= 1')
    if limit < 1 or limit > max_limit:
        raise ValueError(f'limit must be between 1 and {max_limit}')
    return (page - 1) * limit, limit


def _pagination(page: int, limit: int, total: int) -> dict:
    pages = (total + limit - 1) // limit if limit else 0
    return {'current': page, 'pages': pages, 'total': total, 'has_next': page < pages, 'has_prev': page > 1}


class AuthService:
    """Registration, authentication and token issuing."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, email: str, password: str, first_name: str = '', last_name: str = '',
                 role: str = 'participant', allow_admin: bool = False) -> models.User:
        """Create a new account with a hashed password.

        Self-registration is limited to participant and researcher roles;
        admin creation passes `allow_admin=True`.
        """
        email = _clean_email(email)
        if len(password or '') < MIN_PASSWORD_LENGTH:
            raise ValueError(f'password must be at least {MIN_PASSWORD_LENGTH} characters')
        allowed = models.USER_ROLES if allow_admin else ('participant', 'researcher')
        if role not in allowed:
            raise ValueError(f"role must be one of: {', '.join(allowed)}")
        if self.user_repo.get_by_email(email):
            raise ConflictError('an account with this email already exists')
        u = models.User(
            email=email,
            password_hash=PWD_CTX.hash(password),
            first_name=(first_name or '').strip(),
            last_name=(last_name or '').strip(),
            role=role,
        )
        return self.user_repo.create(u)

    def authenticate(self, email: str, password: str) -> Optional[dict]:
        """Verify credentials and return `{access_token, token_type, user}` on success.

        Returns `None` if authentication fails; raises PermissionDenied for
        suspended accounts.
        """
        user = self.user_repo.get_by_email(email or '')
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        if user.status != 'active':
            raise PermissionDenied('account is suspended')
        user.last_login_at = models.utcnow()
        self.user_repo.save(user)
        return {'access_token': self.issue_token(user), 'token_type': 'bearer', 'user': serialize_user(user)}

    @staticmethod
    def issue_token(user: models.User) -> str:
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "email": user.email, "role": user.role, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def update_profile(self, user: models.User, first_name: Optional[str] = None,
                       last_name: Optional[str] = None, email: Optional[str] = None) -> models.User:
        """Self-service edit of names and email. Role and status stay admin-only."""
        if email is not None:
            email = _clean_email(email)
            other = self.user_repo.get_by_email(email)
            if other and other.id != user.id:
                raise ConflictError('an account with this email already exists')
            user.email = email
        for key, value in (('first_name', first_name), ('last_name', last_name)):
            if value is not None:
                value = value.strip()
                if len(value) > 100:
                    raise ValueError(f'{key} must be at most 100 characters')
                setattr(user, key, value)
        user.updated_at = models.utcnow()
        return self.user_repo.save(user)

    def stats(self, user: models.User) -> dict:
        """Per-user counters: studies created or taken part in, and points."""
        _, created = repositories.StudyRepository(self.session).list(researcher_id=user.id, limit=1)
        sessions = repositories.SessionRepository(self.session)
        applications = repositories.ApplicationRepository(self.session).list_for_participant(user.id)
        balance = repositories.PointsRepository(self.session).get_balance(user.id)
        return {
            'profile': {'role': user.role, 'status': user.status},
            'studies': {
                'created': created,
                'participated': sessions.count_for_participant(user.id),
                'completed_sessions': sessions.count_for_participant(user.id, status='completed'),
                'accepted_applications': sum(1 for a in applications if a.status == 'accepted'),
            },
            'points': {
                'total_points': balance.total_points if balance else 0,
                'available_points': balance.available_points if balance else 0,
                'used_points': balance.used_points if balance else 0,
            },
            'activity': {'join_date': _iso(user.created_at), 'last_login': _iso(user.last_login_at)},
        }


class StudyService:
    """Study lifecycle: authoring, listing, status transitions and block import."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.StudyRepository(session)

    def get_or_404(self, study_id: int) -> models.Study:
        study = self.repo.get(study_id)
        if not study:
            raise NotFoundError('Study not found')
        return study

    def get_owned(self, study_id: int, user: models.User) -> models.Study:
        """Return a study the user owns (admins own everything)."""
        study = self.get_or_404(study_id)
        if user.role != 'admin' and study.researcher_id != user.id:
            raise NotFoundError('Study not found or access denied')
        return study

    def get_visible(self, study_id: int, user: models.User) -> models.Study:
        study = self.get_or_404(study_id)
        if user.role == 'admin':
            return study
        if user.role == 'participant':
            if study.status != 'active':
                raise NotFoundError('Study not found')
            return study
        if study.researcher_id != user.id:
            raise NotFoundError('Study not found or access denied')
        return study

    def detail(self, study: models.Study) -> dict:
        return serialize_study(study, self.repo.list_blocks(study.id))

    def create(self, user: models.User, title: str, description: str = '', study_type: str = 'usability',
               target_participants: int = 10, study_settings: Optional[dict] = None,
               blocks: Optional[list] = None) -> models.Study:
        """Create a draft study owned by `user`.

        When `STUDY_CREATION_POINTS` is positive, researchers pay that many
        points; the balance is checked before anything is written.
        """
        title = (title or '').strip()
        if not title:
            raise ValueError('Study title is required')
        if len(title) > 200:
            raise ValueError('Study title must be at most 200 characters')
        if study_type not in models.STUDY_TYPES:
            raise ValueError(f"study_type must be one of: {', '.join(models.STUDY_TYPES)}")
        if target_participants < 1:
            raise ValueError('target_participants must be >= 1')
        normalized_settings = self._normalize_settings(study_settings or {})
        block_rows = build_blocks(blocks or [])
        for b in block_rows:
            b.id = None

        cost = settings.STUDY_CREATION_POINTS
        points = PointsService(self.session)
        charge = cost > 0 and user.role != 'admin'
        if charge:
            points.ensure_available(user.id, cost)

        study = models.Study(
            researcher_id=user.id,
            title=title,
            description=(description or '').strip(),
            study_type=study_type,
            target_participants=target_participants,
            settings=normalized_settings,
        )
        study = self.repo.create(study, block_rows)
        if charge:
            points.consume(user.id, cost, study_id=study.id, reason='Study creation')
        logger.info("study created id=%s researcher=%s blocks=%d", study.id, user.id, len(block_rows))
        return study

    @staticmethod
    def _normalize_settings(raw: dict) -> dict:
        if not isinstance(raw, dict):
            raise ValueError('settings must be an object')
        out = dict(raw)
        out['requires_application'] = bool(raw.get('requires_application', False))
        max_p = raw.get('max_participants')
        if max_p is not None:
            if isinstance(max_p, bool) or not isinstance(max_p, int) or max_p < 1:
                raise ValueError('max_participants must be a positive integer')
        out['max_participants'] = max_p
        return out

    def list_for_user(self, user: models.User, status: Optional[str] = None, search: Optional[str] = None,
                      page: int = 1, limit: int = 20) -> dict:
        offset, limit = _page_args(page, limit)
        if status and status not in models.STUDY_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(models.STUDY_STATUSES)}")
        researcher_id = None
        if user.role == 'participant':
            status = 'active'
        elif user.role == 'researcher':
            researcher_id = user.id
        items, total = self.repo.list(researcher_id=researcher_id, status=status, search=search, offset=offset, limit=limit)
        return {'studies': [serialize_study(s) for s in items], 'pagination': _pagination(page, limit, total)}

    def can_edit(self, study: models.Study) -> dict:
        reasons = {
            'draft': (True, 'Study is in draft status and can be edited'),
            'paused': (True, 'Study is paused. Changes will take effect when resumed.'),
            'active': (False, 'Cannot edit active study. Pause it first to make changes.'),
            'completed': (False, 'Cannot edit completed study'),
            'archived': (False, 'Cannot edit archived study'),
        }
        can, reason = reasons.get(study.status, (False, 'Unknown study status'))
        return {'can_edit': can, 'reason': reason}

    def update(self, study: models.Study, title: Optional[str] = None, description: Optional[str] = None,
               study_type: Optional[str] = None, target_participants: Optional[int] = None,
               study_settings: Optional[dict] = None, blocks: Optional[list] = None) -> models.Study:
        editable = self.can_edit(study)
        if not editable['can_edit']:
            raise ConflictError(editable['reason'])
        if title is not None:
            title = title.strip()
            if not title or len(title) > 200:
                raise ValueError('Study title must be 1-200 characters')
            study.title = title
        if description is not None:
            study.description = description.strip()
        if study_type is not None:
            if study_type not in models.STUDY_TYPES:
                raise ValueError(f"study_type must be one of: {', '.join(models.STUDY_TYPES)}")
            study.study_type = study_type
        if target_participants is not None:
            study.target_participants = target_participants
        if study_settings is not None:
            study.settings = self._normalize_settings(study_settings)
        if blocks is not None:
            self.repo.replace_blocks(study.id, build_blocks(blocks))
        study.updated_at = models.utcnow()
        return self.repo.save(study)

    def validate_transition(self, study: models.Study, new_status: str) -> dict:
        current = study.status
        if new_status not in models.STUDY_STATUSES:
            return {'valid': False, 'reason': f'Unknown status: {new_status}'}
        if new_status not in STATUS_TRANSITIONS.get(current, ()):
            return {'valid': False, 'reason': f'Cannot transition from {current} to {new_status}'}
        if current == 'draft' and new_status == 'active':
            if not study.title or not study.description:
                return {'valid': False, 'reason': 'Study must have title and description before going active'}
            if not self.repo.list_blocks(study.id):
                return {'valid': False, 'reason': 'Study must have at least one block before going active'}
        return {'valid': True, 'reason': ''}

    def change_status(self, study: models.Study, new_status: str) -> models.Study:
        check = self.validate_transition(study, new_status)
        if not check['valid']:
            raise ConflictError(check['reason'])
        logger.info("study %s status %s -> %s", study.id, study.status, new_status)
        study.status = new_status
        study.updated_at = models.utcnow()
        return self.repo.save(study)

    def archive(self, study: models.Study) -> models.Study:
        """Archive regardless of the transition table, except from active (pause or complete first)."""
        if study.status == 'archived':
            return study
        if study.status == 'active':
            raise ConflictError('Cannot archive an active study. Pause or complete it first.')
        study.status = 'archived'
        study.updated_at = models.utcnow()
        return self.repo.save(study)

    def duplicate(self, study: models.Study, user: models.User) -> models.Study:
        copies = [
            {'type': b.block_type, 'title': b.title, 'description': b.description, 'settings': b.settings}
            for b in self.repo.list_blocks(study.id)
        ]
        return self.create(
            user,
            title=f"{study.title} (Copy)"[:200],
            description=study.description,
            study_type=study.study_type,
            target_participants=study.target_participants,
            study_settings=study.settings or {},
            blocks=copies,
        )

    def delete(self, study: models.Study) -> None:
        recordings = repositories.RecordingRepository(self.session).list(study_id=study.id)
        paths = [r.storage_path for r in recordings]
        for resp in repositories.SessionRepository(self.session).list_responses_for_study(study.id):
            if isinstance(resp.response, dict):
                paths.extend(f.get('stored_as', '') for f in (resp.response.get('files') or []) if isinstance(f, dict))
        self.repo.delete(study)
        for p in paths:
            storage.delete_file(p)
        logger.info("study deleted id=%s", study.id)

    def import_blocks(self, study: models.Study, file_bytes: bytes, filename: str, dry_run: bool = False) -> dict:
        """Parse `filename` contents and append the questions as blocks.

        Returns counts and per-item `errors`; invalid items are skipped
        while valid ones are still imported.
        """
        editable = self.can_edit(study)
        if not editable['can_edit']:
            raise ConflictError(editable['reason'])
        parsed = parse_file_to_blocks(file_bytes, filename)
        rows = []
        errors = []
        for idx, item in enumerate(parsed):
            if not isinstance(item, dict):
                errors.append({'index': idx, 'error': 'item must be an object'})
                continue
            question = item.get('question') or ''
            if not question:
                errors.append({'index': idx, 'error': 'missing or empty question'})
                continue
            block_type = infer_block_type(item)
            overrides = {'question': question[:500]}
            if block_type == 'multiple_choice':
                overrides['options'] = item.get('options') or []
            try:
                rows.extend(build_blocks([{'type': block_type, 'title': question[:200], 'settings': overrides}]))
            except ValueError as e:
                errors.append({'index': idx, 'error': str(e).replace('block 0: ', '', 1)})
        created = []
        if rows and not dry_run:
            created = self.repo.add_blocks(study.id, rows)
            study.updated_at = models.utcnow()
            self.repo.save(study)
        return {
            'parsed': len(parsed),
            'created': 0 if dry_run else len(created),
            'valid': len(rows),
            'errors': errors,
            'blocks': [serialize_block(b) for b in created],
        }


class ApplicationService:
    """Participant applications and researcher review."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.ApplicationRepository(session)
        self.studies = StudyService(session)

    def _accepted_count(self, study_id: int) -> int:
        return self.repo.count_by_status(study_id).get('accepted', 0)

    def _ensure_capacity(self, study: models.Study) -> None:
        max_p = (study.settings or {}).get('max_participants')
        if max_p and self._accepted_count(study.id) >= max_p:
            raise ConflictError('Study is full')

    def apply(self, study_id: int, participant: models.User, responses: Optional[dict] = None) -> models.StudyApplication:
        study = self.studies.get_or_404(study_id)
        if study.status != 'active':
            raise ConflictError('Study is not accepting applications')
        existing = self.repo.get_for_participant(study_id, participant.id)
        if existing and existing.status != 'withdrawn':
            raise ConflictError('You have already applied to this study')
        self._ensure_capacity(study)
        app = models.StudyApplication(
            study_id=study_id,
            participant_id=participant.id,
            application_data=responses or {},
        )
        return self.repo.save(app)

    def list_mine(self, participant: models.User) -> List[dict]:
        return [serialize_application(a) for a in self.repo.list_for_participant(participant.id)]

    def withdraw(self, application_id: int, participant: models.User) -> models.StudyApplication:
        app = self.repo.get(application_id)
        if not app or app.participant_id != participant.id:
            raise NotFoundError('Application not found')
        if app.status != 'pending':
            raise ConflictError(f'Cannot withdraw a {app.status} application')
        app.status = 'withdrawn'
        return self.repo.save(app)

    def list_for_study(self, study_id: int, user: models.User, status: Optional[str] = None,
                       page: int = 1, limit: int = 20) -> dict:
        self.studies.get_owned(study_id, user)
        if status and status not in models.APPLICATION_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(models.APPLICATION_STATUSES)}")
        offset, limit = _page_args(page, limit)
        items, total = self.repo.list_for_study(study_id, status=status, offset=offset, limit=limit)
        users = repositories.UserRepository(self.session)
        return {
            'applications': [serialize_application(a, users.get(a.participant_id)) for a in items],
            'pagination': _pagination(page, limit, total),
        }

    def review(self, application_id: int, user: models.User, status: str, notes: Optional[str] = None) -> models.StudyApplication:
        if status not in ('accepted', 'rejected'):
            raise ValueError('Invalid status. Must be "accepted" or "rejected"')
        app = self.repo.get(application_id)
        if not app:
            raise NotFoundError('Application not found')
        study = self.studies.get_or_404(app.study_id)
        if user.role != 'admin' and study.researcher_id != user.id:
            raise PermissionDenied('You can only review applications for your own studies')
        if app.status == 'withdrawn':
            raise ConflictError('Application was withdrawn')
        if status == 'accepted' and app.status != 'accepted':
            self._ensure_capacity(study)
        app.status = status
        app.notes = notes or None
        app.reviewed_at = models.utcnow()
        app.reviewed_by = user.id
        return self.repo.save(app)


class ParticipationService:
    """Study sessions, block responses and block file uploads."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.SessionRepository(session)
        self.studies = StudyService(session)

    def start(self, study_id: int, participant: models.User) -> tuple:
        """Start (or resume) the participant's session; returns (session, created)."""
        study = self.studies.get_or_404(study_id)
        if study.status != 'active':
            raise ConflictError('Study is not active')
        if (study.settings or {}).get('requires_application'):
            app = repositories.ApplicationRepository(self.session).get_for_participant(study_id, participant.id)
            if not app or app.status != 'accepted':
                raise PermissionDenied('An accepted application is required to take part in this study')
        existing = self.repo.get_active(study_id, participant.id)
        if existing:
            return existing, False
        created = self.repo.save(models.StudySession(study_id=study_id, participant_id=participant.id))
        return created, True

    def get_own_session(self, session_id: int, participant: models.User) -> models.StudySession:
        s = self.repo.get(session_id)
        if not s or s.participant_id != participant.id:
            raise NotFoundError('Session not found')
        return s

    def get_visible_session(self, session_id: int, user: models.User) -> models.StudySession:
        s = self.repo.get(session_id)
        if not s:
            raise NotFoundError('Session not found')
        if user.role == 'admin' or s.participant_id == user.id:
            return s
        study = self.studies.get_or_404(s.study_id)
        if study.researcher_id != user.id:
            raise NotFoundError('Session not found')
        return s

    def session_detail(self, s: models.StudySession) -> dict:
        out = serialize_session(s)
        out['responses'] = [serialize_response(r) for r in self.repo.list_responses(s.id)]
        return out

    def _block_in_session(self, s: models.StudySession, block_id: int) -> models.StudyBlock:
        block = self.studies.repo.get_block(block_id)
        if not block or block.study_id != s.study_id:
            raise NotFoundError('Block not found in this study')
        return block

    def submit_response(self, session_id: int, participant: models.User, block_id: int, response: Any,
                        time_spent: float = 0.0, is_last_block: bool = False,
                        metadata: Optional[dict] = None) -> dict:
        s = self.get_own_session(session_id, participant)
        if s.status != 'active':
            raise ConflictError('Session is already completed')
        block = self._block_in_session(s, block_id)
        if response is None:
            raise ValueError('Missing response data')
        if time_spent is None or not math.isfinite(time_spent) or time_spent < 0:
            raise ValueError('Invalid time_spent value - must be a positive number')
        try:
            size = len(json.dumps(response, default=str, allow_nan=False))
            json.dumps(metadata or {}, default=str, allow_nan=False)
        except ValueError:
            raise ValueError('Response must not contain NaN or infinite numbers')
        if size > settings.MAX_RESPONSE_BYTES:
            raise PayloadTooLargeError(f'Response too large: {size} bytes, max: {settings.MAX_RESPONSE_BYTES}')
        block_registry.validate_response(block.block_type, block.settings or {}, response)
        saved = self._store_response(s, block, response, time_spent, metadata)
        completed = block.block_type == 'thank_you' or bool(is_last_block)
        if completed:
            self._complete(s)
        total = len(self.repo.list_responses(s.id))
        logger.info("response saved session=%s block=%s completed=%s", s.id, block.id, completed)
        return {
            'session_id': s.id,
            'block_id': block.id,
            'response_id': saved.id,
            'saved': True,
            'study_completed': completed,
            'total_responses': total,
            'completion_message': 'Study completed successfully! Thank you for your participation.' if completed else None,
        }

    def _store_response(self, s: models.StudySession, block: models.StudyBlock, response: Any,
                        time_spent: float, metadata: Optional[dict]) -> models.BlockResponse:
        row = self.repo.get_response(s.id, block.id)
        now = models.utcnow()
        if row is None:
            row = models.BlockResponse(session_id=s.id, block_id=block.id, block_type=block.block_type)
        row.response = response
        row.time_spent = float(time_spent or 0)
        row.response_metadata = dict(metadata or {})
        row.updated_at = now
        saved = self.repo.save_response(row)
        s.updated_at = now
        self.repo.save(s)
        return saved

    def _complete(self, s: models.StudySession) -> None:
        s.status = 'completed'
        s.completed_at = models.utcnow()
        self.repo.save(s)

    def upload_block_file(self, session_id: int, participant: models.User, block_id: int,
                          filename: str, payload: bytes) -> dict:
        """Store a file for an image/file upload block and record it as the block's response."""
        s = self.get_own_session(session_id, participant)
        if s.status != 'active':
            raise ConflictError('Session is already completed')
        block = self._block_in_session(s, block_id)
        if block.block_type not in block_registry.UPLOAD_BLOCK_TYPES:
            raise ValueError('Block does not accept file uploads')
        storage.validate_filename(filename)
        cfg = block.settings or {}
        ext = storage.file_extension(filename)
        allowed = [f.lower().lstrip('.') for f in cfg.get('allowed_formats') or []]
        if allowed and ext not in allowed:
            raise UnsupportedMediaError(f"file type .{ext} not allowed; expected one of: {', '.join(allowed)}")
        limit = min(int(cfg.get('max_file_size') or settings.MAX_UPLOAD_BYTES), settings.MAX_UPLOAD_BYTES)
        if len(payload) > limit:
            raise PayloadTooLargeError(f'file too large; max {limit} bytes')
        if block.block_type == 'image_upload' and not storage.is_valid_image(payload):
            raise UnsupportedMediaError('unsupported file content; expected an image')
        existing = self.repo.get_response(s.id, block.id)
        files = list((existing.response or {}).get('files', [])) if existing and isinstance(existing.response, dict) else []
        if not cfg.get('allow_multiple'):
            for old in files:
                storage.delete_file(old.get('stored_as', ''))
            files = []
        if len(files) >= int(cfg.get('max_files') or 1):
            raise ConflictError('maximum number of files reached for this block')
        path = storage.save_bytes(f"uploads/{s.study_id}", filename, payload)
        files.append({'filename': filename, 'stored_as': storage.relative_key(path), 'size_bytes': len(payload)})
        saved = self._store_response(s, block, {'files': files}, 0.0, {'uploaded_at': models.utcnow().isoformat()})
        return {'session_id': s.id, 'block_id': block.id, 'response_id': saved.id,
                'files': public_response(saved.response)['files']}


class RecordingService:
    """Upload and access control for session recordings."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.RecordingRepository(session)
        self.participation = ParticipationService(session)

    def upload(self, session_id: int, participant: models.User, filename: str, content_type: Optional[str],
               payload: bytes, duration_seconds: Optional[float] = None) -> models.Recording:
        s = self.participation.get_own_session(session_id, participant)
        storage.validate_filename(filename)
        base_type = (content_type or '').split(';')[0].strip().lower()
        if base_type not in RECORDING_CONTENT_TYPES:
            raise UnsupportedMediaError(f"unsupported recording type; expected one of: {', '.join(RECORDING_CONTENT_TYPES)}")
        if not payload:
            raise ValueError('empty recording')
        if len(payload) > settings.MAX_RECORDING_BYTES:
            raise PayloadTooLargeError(f'recording too large; max {settings.MAX_RECORDING_BYTES} bytes')
        if duration_seconds is not None and duration_seconds < 0:
            raise ValueError('duration_seconds must be >= 0')
        path = storage.save_bytes(f"recordings/{s.study_id}", filename, payload)
        rec = models.Recording(
            session_id=s.id,
            study_id=s.study_id,
            participant_id=participant.id,
            filename=filename,
            content_type=base_type,
            size_bytes=len(payload),
            duration_seconds=duration_seconds,
            storage_path=storage.relative_key(path),
        )
        return self.repo.save(rec)

    def list_for_user(self, user: models.User, study_id: Optional[int] = None) -> List[models.Recording]:
        if user.role == 'participant':
            return self.repo.list(study_id=study_id, participant_id=user.id)
        if study_id is None:
            if user.role != 'admin':
                raise ValueError('study_id is required')
            return self.repo.list()
        StudyService(self.session).get_owned(study_id, user)
        return self.repo.list(study_id=study_id)

    def get_visible(self, recording_id: int, user: models.User) -> models.Recording:
        rec = self.repo.get(recording_id)
        if not rec:
            raise NotFoundError('Recording not found')
        if user.role == 'admin' or rec.participant_id == user.id:
            return rec
        study = StudyService(self.session).get_or_404(rec.study_id)
        if study.researcher_id != user.id:
            raise NotFoundError('Recording not found')
        return rec

    def delete(self, rec: models.Recording) -> None:
        path = rec.storage_path
        self.repo.delete(rec)
        storage.delete_file(path)


class PointsService:
    """Admin-granted points ledger."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.PointsRepository(session)
        self.users = repositories.UserRepository(session)

    def get_or_create_balance(self, user_id: int) -> models.PointsBalance:
        bal = self.repo.get_balance(user_id)
        if bal is None:
            bal = models.PointsBalance(user_id=user_id)
            self.repo.add(bal)
        return bal

    def ensure_available(self, user_id: int, amount: int) -> models.PointsBalance:
        bal = self.repo.get_balance(user_id)
        available = bal.available_points if bal else 0
        if available < amount:
            raise InsufficientPointsError(amount, available)
        return bal

    def assign(self, admin: models.User, amount: int, target_user_id: Optional[int] = None,
               user_email: Optional[str] = None, reason: Optional[str] = None,
               expires_in_days: Optional[int] = None) -> dict:
        if (not target_user_id and not user_email) or not amount or amount <= 0:
            raise ValueError('Target user ID or email and positive amount required')
        if target_user_id:
            target = self.users.get(target_user_id)
        else:
            target = self.users.get_by_email(user_email)
        if not target:
            ident = f"ID: {target_user_id}" if target_user_id else f"email: {user_email}"
            raise NotFoundError(f'Target user not found with {ident}')
        expires_at = models.utcnow() + timedelta(days=expires_in_days) if expires_in_days else None
        bal = self.get_or_create_balance(target.id)
        bal.total_points += amount
        bal.available_points += amount
        bal.last_updated = models.utcnow()
        tx = models.PointsTransaction(
            user_id=target.id,
            tx_type='assigned',
            amount=amount,
            balance=bal.available_points,
            reason=reason or 'Admin assignment',
            assigned_by=admin.id,
            expires_at=expires_at,
        )
        self.repo.add(bal, tx)
        audit.record_event(admin.id, 'points.assign', f"user:{target.id}", {'amount': amount, 'reason': tx.reason})
        return {
            'transaction': serialize_transaction(tx),
            'balance': serialize_balance(bal),
            'message': f'{amount} points assigned to {target.email}',
        }

    def consume(self, user_id: int, amount: int, study_id: Optional[int] = None, reason: Optional[str] = None) -> dict:
        if not amount or amount <= 0:
            raise ValueError('Positive amount required')
        bal = self.repo.get_balance(user_id)
        if not bal or bal.available_points < amount:
            raise InsufficientPointsError(amount, bal.available_points if bal else 0)
        bal.available_points -= amount
        bal.used_points += amount
        bal.last_updated = models.utcnow()
        tx = models.PointsTransaction(
            user_id=user_id,
            tx_type='consumed',
            amount=-amount,
            balance=bal.available_points,
            reason=reason or 'Study creation',
            study_id=study_id,
        )
        self.repo.add(bal, tx)
        return {
            'transaction': serialize_transaction(tx),
            'balance': serialize_balance(bal),
            'message': f'{amount} points consumed',
        }

    def history(self, user_id: int, limit: int = 50, offset: int = 0) -> List[dict]:
        if limit < 1 or limit > 200 or offset < 0:
            raise ValueError('limit must be 1-200 and offset >= 0')
        return [serialize_transaction(t) for t in self.repo.list_transactions(user_id, offset=offset, limit=limit)]

    def admin_balances(self) -> List[dict]:
        out = []
        for b in self.repo.list_balances():
            item = serialize_balance(b)
            u = self.users.get(b.user_id)
            item['profile'] = {'email': u.email, 'first_name': u.first_name, 'last_name': u.last_name, 'role': u.role} if u else None
            out.append(item)
        return out

    def expire(self, now: Optional[datetime] = None) -> dict:
        """Expire points from assignments whose expiry has passed.

        Each expired assignment removes at most what is still available,
        since spent points cannot be taken back.
        """
        now = now or models.utcnow()
        processed = 0
        expired_total = 0
        for tx in self.repo.list_expirable(now):
            bal = self.get_or_create_balance(tx.user_id)
            to_expire = min(tx.amount, bal.available_points)
            tx.expiry_processed = True
            rows = [tx]
            if to_expire > 0:
                bal.available_points -= to_expire
                bal.expired_points += to_expire
                bal.last_updated = now
                rows.append(bal)
                rows.append(models.PointsTransaction(
                    user_id=tx.user_id,
                    tx_type='expired',
                    amount=-to_expire,
                    balance=bal.available_points,
                    reason=f'Expiry of assignment #{tx.id}',
                ))
                expired_total += to_expire
            self.repo.add(*rows)
            processed += 1
        logger.info("points expiry sweep processed=%d expired=%d", processed, expired_total)
        return {'processed': processed, 'expired_points': expired_total}


class TemplateService:
    """Community templates and their reviews."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.TemplateRepository(session)

    def create(self, author: models.User, title: str, description: str = '', category: str = 'general',
               study_type: str = 'usability', is_public: bool = True, blocks: Optional[list] = None) -> models.Template:
        title = (title or '').strip()
        if not title or len(title) > 200:
            raise ValueError('Template title must be 1-200 characters')
        if study_type not in models.STUDY_TYPES:
            raise ValueError(f"study_type must be one of: {', '.join(models.STUDY_TYPES)}")
        rows = build_blocks(blocks or [])
        if not rows:
            raise ValueError('A template needs at least one block')
        tpl = models.Template(
            author_id=author.id,
            title=title,
            description=(description or '').strip(),
            category=(category or 'general').strip().lower(),
            study_type=study_type,
            is_public=is_public,
            blocks=[{'type': b.block_type, 'title': b.title, 'description': b.description, 'settings': b.settings} for b in rows],
        )
        return self.repo.save(tpl)

    def list_public(self, category: Optional[str] = None, search: Optional[str] = None, sort: str = 'popular') -> List[dict]:
        if sort not in ('popular', 'rating', 'recent'):
            raise ValueError('sort must be one of: popular, rating, recent')
        return [serialize_template(t) for t in self.repo.list_public(category=category, search=search, sort=sort)]

    def get_visible(self, template_id: int, user: Optional[models.User] = None) -> models.Template:
        tpl = self.repo.get(template_id)
        if not tpl:
            raise NotFoundError('Template not found')
        if not tpl.is_public and (user is None or (user.role != 'admin' and user.id != tpl.author_id)):
            raise NotFoundError('Template not found')
        return tpl

    def use(self, template_id: int, user: models.User, title: Optional[str] = None) -> models.Study:
        tpl = self.get_visible(template_id, user)
        study = StudyService(self.session).create(
            user,
            title=title or tpl.title,
            description=tpl.description,
            study_type=tpl.study_type,
            blocks=list(tpl.blocks or []),
        )
        tpl.usage_count += 1
        self.repo.save(tpl)
        return study

    def list_reviews(self, template_id: int, page: int = 1, limit: int = 10, sort: str = 'recent') -> dict:
        self.get_visible(template_id)
        if sort not in ('recent', 'helpful', 'rating_high', 'rating_low'):
            sort = 'recent'
        offset, limit = _page_args(page, limit, max_limit=50)
        reviews = self.repo.list_reviews(template_id, sort=sort, offset=offset, limit=limit)
        ratings = self.repo.approved_ratings(template_id)
        total = len(ratings)
        average = round(sum(ratings) / total, 1) if total else 0
        return {
            'reviews': [serialize_review(r) for r in reviews],
            'pagination': {'page': page, 'limit': limit, 'total': total, 'pages': (total + limit - 1) // limit},
            'summary': {
                'total_reviews': total,
                'average_rating': average,
                'rating_distribution': [{'rating': n, 'count': ratings.count(n)} for n in range(1, 6)],
            },
        }

    @staticmethod
    def _check_rating(rating) -> int:
        if isinstance(rating, bool) or not isinstance(rating, int) or rating < 1 or rating > 5:
            raise ValueError('Rating must be between 1 and 5')
        return rating

    @staticmethod
    def _check_comment(comment) -> str:
        text = (comment or '').strip()
        if len(text) < 10:
            raise ValueError('Comment must be at least 10 characters long')
        return text

    def add_review(self, template_id: int, reviewer: models.User, rating: int, comment: str, title: str = '',
                   usage_context: str = '', organization_size: str = '') -> models.TemplateReview:
        self.get_visible(template_id, reviewer)
        rating = self._check_rating(rating)
        comment = self._check_comment(comment)
        if self.repo.get_review_by_reviewer(template_id, reviewer.id):
            raise ConflictError('You have already reviewed this template')
        review = models.TemplateReview(
            template_id=template_id,
            reviewer_id=reviewer.id,
            reviewer_name=reviewer.full_name or reviewer.email.split('@')[0],
            rating=rating,
            title=(title or '').strip(),
            comment=comment,
            usage_context=(usage_context or '').strip(),
            organization_size=(organization_size or '').strip(),
        )
        review = self.repo.save_review(review)
        self.refresh_rating_stats(template_id)
        return review

    def _owned_review(self, template_id: int, review_id: int, user: models.User, verb: str) -> models.TemplateReview:
        review = self.repo.get_review(template_id, review_id)
        if not review:
            raise NotFoundError('Review not found')
        if review.reviewer_id != user.id and not (verb == 'delete' and user.role == 'admin'):
            raise PermissionDenied(f'Not authorized to {verb} this review')
        return review

    def update_review(self, template_id: int, review_id: int, user: models.User, changes: dict) -> models.TemplateReview:
        review = self._owned_review(template_id, review_id, user, 'update')
        if changes.get('rating') is not None:
            review.rating = self._check_rating(changes['rating'])
        if changes.get('comment') is not None:
            review.comment = self._check_comment(changes['comment'])
        for key in ('title', 'usage_context', 'organization_size'):
            if changes.get(key) is not None:
                setattr(review, key, changes[key].strip())
        review.updated_at = models.utcnow()
        review = self.repo.save_review(review)
        self.refresh_rating_stats(template_id)
        return review

    def delete_review(self, template_id: int, review_id: int, user: models.User) -> None:
        review = self._owned_review(template_id, review_id, user, 'delete')
        self.repo.delete_review(review)
        self.refresh_rating_stats(template_id)

    def mark_helpful(self, template_id: int, review_id: int) -> models.TemplateReview:
        review = self.repo.get_review(template_id, review_id)
        if not review:
            raise NotFoundError('Review not found')
        review.helpful_count += 1
        return self.repo.save_review(review)

    def refresh_rating_stats(self, template_id: int) -> None:
        """Recompute the template's average rating and review count from approved reviews."""
        tpl = self.repo.get(template_id)
        if not tpl:
            return
        ratings = self.repo.approved_ratings(template_id)
        tpl.review_count = len(ratings)
        tpl.average_rating = round(sum(ratings) / len(ratings), 1) if ratings else 0.0
        tpl.updated_at = models.utcnow()
        self.repo.save(tpl)


BULK_ACTIONS = ('update_role', 'suspend', 'activate', 'delete')


class AdminService:
    """User administration and platform overview for admins."""
    def __init__(self, session: Session):
        self.session = session
        self.users = repositories.UserRepository(session)

    def _get_user(self, user_id: int) -> models.User:
        u = self.users.get(user_id)
        if not u:
            raise NotFoundError('User not found')
        return u

    def list_users(self, role: Optional[str] = None, status: Optional[str] = None, search: Optional[str] = None) -> List[dict]:
        return [serialize_user(u) for u in self.users.list(role=role, status=status, search=search)]

    def overview(self, activity_limit: int = 10) -> dict:
        """Platform-wide counters for the admin dashboard."""
        studies = repositories.StudyRepository(self.session)
        sessions = self.session.exec(select(models.StudySession)).all()
        completed = sum(1 for s in sessions if s.status == 'completed')
        by_status = studies.count_by_status()
        by_role = self.users.count_by_role()
        return {
            'total_users': sum(by_role.values()),
            'active_users': self.users.count_active_since(models.utcnow() - timedelta(days=30)),
            'users_by_role': by_role,
            'total_studies': sum(by_status.values()),
            'active_studies': by_status.get('active', 0),
            'studies_by_status': by_status,
            'total_responses': repositories.SessionRepository(self.session).count_responses(),
            'average_completion_rate': round(completed / len(sessions) * 100, 1) if sessions else 0,
            'recent_activity': audit.recent_events(activity_limit),
        }

    def create_user(self, admin: models.User, email: str, password: str, first_name: str, last_name: str,
                    role: str = 'participant') -> models.User:
        if not (first_name or '').strip() or not (last_name or '').strip():
            raise ValueError('Email, password, first_name, and last_name are required')
        user = AuthService(self.session).register(email, password, first_name, last_name, role, allow_admin=True)
        audit.record_event(admin.id, 'user.create', f"user:{user.id}", {'role': role})
        return user

    def update_user(self, admin: models.User, user_id: int, changes: dict) -> models.User:
        user = self._get_user(user_id)
        role = changes.get('role')
        status = changes.get('status')
        if role is not None and role not in models.USER_ROLES:
            raise ValueError(f"role must be one of: {', '.join(models.USER_ROLES)}")
        if status is not None and status not in models.USER_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(models.USER_STATUSES)}")
        if user.id == admin.id and ((role and role != 'admin') or status == 'suspended'):
            raise ValueError('Admins cannot demote or suspend themselves')
        email = changes.get('email')
        if email is not None:
            email = _clean_email(email)
            other = self.users.get_by_email(email)
            if other and other.id != user.id:
                raise ConflictError('an account with this email already exists')
            user.email = email
        for key in ('first_name', 'last_name'):
            if changes.get(key) is not None:
                setattr(user, key, changes[key].strip())
        if role is not None:
            user.role = role
        if status is not None:
            user.status = status
        user.updated_at = models.utcnow()
        user = self.users.save(user)
        audit.record_event(admin.id, 'user.update', f"user:{user.id}", {k: v for k, v in changes.items() if v is not None})
        return user

    def delete_user(self, admin: models.User, user_id: int) -> None:
        user = self._get_user(user_id)
        if user.id == admin.id:
            raise ValueError('Admins cannot delete their own account')
        self._purge_user(user)
        audit.record_event(admin.id, 'user.delete', f"user:{user_id}")

    def _purge_user(self, user: models.User) -> None:
        """Remove a user and everything they own."""
        studies = StudyService(self.session)
        for study in self.session.exec(select(models.Study).where(models.Study.researcher_id == user.id)).all():
            studies.delete(study)
        sessions = self.session.exec(select(models.StudySession).where(models.StudySession.participant_id == user.id)).all()
        for s in sessions:
            for r in self.session.exec(select(models.BlockResponse).where(models.BlockResponse.session_id == s.id)).all():
                self.session.delete(r)
        for rec in self.session.exec(select(models.Recording).where(models.Recording.participant_id == user.id)).all():
            storage.delete_file(rec.storage_path)
            self.session.delete(rec)
        for s in sessions:
            self.session.delete(s)
        for a in self.session.exec(select(models.StudyApplication).where(models.StudyApplication.participant_id == user.id)).all():
            self.session.delete(a)
        for a in self.session.exec(select(models.StudyApplication).where(models.StudyApplication.reviewed_by == user.id)).all():
            a.reviewed_by = None
            self.session.add(a)
        for t in self.session.exec(select(models.PointsTransaction).where(models.PointsTransaction.assigned_by == user.id)).all():
            t.assigned_by = None
            self.session.add(t)
        for t in self.session.exec(select(models.PointsTransaction).where(models.PointsTransaction.user_id == user.id)).all():
            self.session.delete(t)
        bal = self.session.get(models.PointsBalance, user.id)
        if bal:
            self.session.delete(bal)
        touched_templates = set()
        for r in self.session.exec(select(models.TemplateReview).where(models.TemplateReview.reviewer_id == user.id)).all():
            touched_templates.add(r.template_id)
            self.session.delete(r)
        for tpl in self.session.exec(select(models.Template).where(models.Template.author_id == user.id)).all():
            for r in self.session.exec(select(models.TemplateReview).where(models.TemplateReview.template_id == tpl.id)).all():
                self.session.delete(r)
            touched_templates.discard(tpl.id)
            self.session.delete(tpl)
        self.users.delete(user)
        templates = TemplateService(self.session)
        for template_id in touched_templates:
            templates.refresh_rating_stats(template_id)

    def bulk(self, admin: models.User, user_ids: List[int], action: str, data: Optional[dict] = None) -> List[dict]:
        """Apply `action` to each user independently and report per-user outcomes."""
        if not user_ids:
            raise ValueError('user_ids array is required')
        if action not in BULK_ACTIONS:
            raise ValueError(f"action must be one of: {', '.join(BULK_ACTIONS)}")
        data = data or {}
        if action == 'update_role' and data.get('role') not in models.USER_ROLES:
            raise ValueError(f"data.role must be one of: {', '.join(models.USER_ROLES)}")
        results = []
        for user_id in user_ids:
            try:
                if action == 'update_role':
                    self.update_user(admin, user_id, {'role': data['role']})
                elif action == 'suspend':
                    self.update_user(admin, user_id, {'status': 'suspended'})
                elif action == 'activate':
                    self.update_user(admin, user_id, {'status': 'active'})
                else:
                    self.delete_user(admin, user_id)
                results.append({'user_id': user_id, 'success': True, 'error': None})
            except (NotFoundError, ConflictError, ValueError) as e:
                self.session.rollback()
                results.append({'user_id': user_id, 'success': False, 'error': str(e)})
        audit.record_event(admin.id, 'user.bulk', action, {
            'user_ids': list(user_ids),
            'succeeded': sum(1 for r in results if r['success']),
        })
        return results
