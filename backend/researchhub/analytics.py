"""Study results aggregation, analytics and CSV export.

`StudyResults` turns stored block responses into per-block summaries,
`StudyAnalytics` computes participation metrics for one study or a
researcher's dashboard, and `export_study_csv` is the worker used by
the background export job store.
"""

import csv
import json
import logging
import threading
import time
from collections import Counter, defaultdict
from typing import Dict, List, Optional

from sqlmodel import Session, select

from . import models, repositories
from .database import engine
from .services import aware as _aware, public_response
from .utils import storage

logger = logging.getLogger("researchhub.analytics")

RECENT_STUDIES = 5


class StudyResults:
    """Per-block aggregation of a study's responses."""
    def __init__(self, session: Session):
        self.session = session
        self.studies = repositories.StudyRepository(session)
        self.sessions = repositories.SessionRepository(session)

    def summarize(self, study: models.Study) -> dict:
        blocks = self.studies.list_blocks(study.id)
        responses = self.sessions.list_responses_for_study(study.id)
        by_block: Dict[int, List[models.BlockResponse]] = defaultdict(list)
        for r in responses:
            by_block[r.block_id].append(r)
        participants = {s.participant_id for s in self.sessions.list_for_study(study.id)}
        return {
            'study_id': study.id,
            'title': study.title,
            'participants': len(participants),
            'total_responses': len(responses),
            'blocks': [self._block_summary(b, by_block.get(b.id, [])) for b in blocks],
        }

    def _block_summary(self, block: models.StudyBlock, rows: List[models.BlockResponse]) -> dict:
        values = [r.response for r in rows]
        times = [r.time_spent for r in rows if r.time_spent is not None]
        out = {
            'block_id': block.id,
            'type': block.block_type,
            'title': block.title,
            'response_count': len(rows),
            'average_time_spent': round(sum(times) / len(times), 2) if times else 0,
        }
        out['summary'] = self._aggregate(block, values)
        return out

    @staticmethod
    def _aggregate(block: models.StudyBlock, values: list) -> dict:
        kind = block.block_type
        cfg = block.settings or {}
        if kind == 'multiple_choice':
            counts = Counter()
            for v in values:
                for choice in (v if isinstance(v, list) else [v]):
                    counts[str(choice)] += 1
            options = [str(o) for o in cfg.get('options') or []]
            return {'option_counts': {o: counts.get(o, 0) for o in options}}
        if kind == 'opinion_scale':
            nums = [v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
            dist = Counter(nums)
            return {
                'average': round(sum(nums) / len(nums), 2) if nums else None,
                'distribution': {str(k): dist[k] for k in sorted(dist)},
            }
        if kind == 'yes_no':
            return {'yes': sum(1 for v in values if v is True), 'no': sum(1 for v in values if v is False)}
        if kind in ('open_question', 'simple_input'):
            return {'answers': [v for v in values if v not in (None, '')]}
        if kind == 'card_sort':
            placements: Dict[str, Counter] = defaultdict(Counter)
            for v in values:
                if isinstance(v, dict):
                    for item, category in v.items():
                        placements[str(item)][str(category)] += 1
            return {'placements': {item: dict(c) for item, c in placements.items()}}
        if kind in ('image_upload', 'file_upload'):
            files = sum(len(v.get('files') or []) for v in values if isinstance(v, dict))
            return {'file_count': files}
        if kind in ('five_second_test', 'tree_test'):
            return {'responses': values}
        return {}


class StudyAnalytics:
    """Participation metrics for studies and researcher dashboards."""
    def __init__(self, session: Session):
        self.session = session
        self.studies = repositories.StudyRepository(session)
        self.sessions = repositories.SessionRepository(session)
        self.applications = repositories.ApplicationRepository(session)

    @staticmethod
    def _completion(sessions: List[models.StudySession]) -> dict:
        completed = [s for s in sessions if s.status == 'completed' and s.completed_at]
        durations = [
            (_aware(s.completed_at) - _aware(s.started_at)).total_seconds()
            for s in completed if s.started_at
        ]
        started = len(sessions)
        return {
            'sessions_started': started,
            'sessions_completed': len(completed),
            'completion_rate': round(len(completed) / started * 100, 1) if started else 0,
            'average_completion_seconds': round(sum(durations) / len(durations), 1) if durations else None,
        }

    def for_study(self, study: models.Study) -> dict:
        sessions = self.sessions.list_for_study(study.id)
        per_day = Counter()
        for r in self.sessions.list_responses_for_study(study.id):
            per_day[_aware(r.created_at).date().isoformat()] += 1
        out = {'study_id': study.id, 'status': study.status}
        out.update(self._completion(sessions))
        out['applications'] = self.applications.count_by_status(study.id)
        out['responses_per_day'] = [{'date': d, 'count': per_day[d]} for d in sorted(per_day)]
        return out

    def dashboard(self, user: models.User) -> dict:
        researcher_id = None if user.role == 'admin' else user.id
        studies, total = self.studies.list(researcher_id=researcher_id, offset=0, limit=RECENT_STUDIES)
        by_status = self.studies.count_by_status(researcher_id)
        study_ids = [s.id for s in self.session.exec(_studies_stmt(researcher_id)).all()]
        sessions = self.sessions.list_for_studies(study_ids)
        completion = self._completion(sessions)
        return {
            'total_studies': total,
            'active_studies': by_status.get('active', 0),
            'studies_by_status': by_status,
            'total_participants': len({s.participant_id for s in sessions}),
            'completion_rate': completion['completion_rate'],
            'sessions_started': completion['sessions_started'],
            'sessions_completed': completion['sessions_completed'],
            'recent_studies': [
                {'id': s.id, 'title': s.title, 'status': s.status, 'created_at': _aware(s.created_at).isoformat()}
                for s in studies
            ],
        }


def _studies_stmt(researcher_id: Optional[int] = None):
    stmt = select(models.Study)
    if researcher_id is not None:
        stmt = stmt.where(models.Study.researcher_id == researcher_id)
    return stmt


class DashboardCache:
    """Per-user TTL cache for dashboard analytics."""
    def __init__(self):
        self._entries = {}
        self._lock = threading.Lock()

    def get_or_compute(self, user_id: int, compute, ttl_seconds: int) -> dict:
        now = time.monotonic()
        with self._lock:
            hit = self._entries.get(user_id)
        if hit and now - hit[0] < ttl_seconds:
            return {'data': hit[1], 'cached': True, 'cache_age': round(now - hit[0], 1)}
        data = compute()
        with self._lock:
            self._entries[user_id] = (now, data)
        return {'data': data, 'cached': False, 'cache_age': 0}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


EXPORT_COLUMNS = ['session_id', 'participant_id', 'session_status', 'block_id', 'block_type',
                  'block_title', 'response', 'time_spent', 'submitted_at']


def export_study_csv(study_id: int, export_format: str) -> dict:
    """Write every response of a study to `STORAGE_DIR/exports` as CSV.

    Runs on a worker thread, so it opens its own database session.
    """
    if export_format != 'csv':
        raise ValueError(f'unsupported export format: {export_format}')
    with Session(engine) as session:
        study = repositories.StudyRepository(session).get(study_id)
        if not study:
            raise ValueError('study no longer exists')
        blocks = {b.id: b for b in repositories.StudyRepository(session).list_blocks(study_id)}
        sess_repo = repositories.SessionRepository(session)
        sessions = {s.id: s for s in sess_repo.list_for_study(study_id)}
        responses = sess_repo.list_responses_for_study(study_id)
        target_dir = storage.storage_root() / 'exports'
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"study_{study_id}_{int(time.time() * 1000)}.csv"
        with path.open('w', newline='', encoding='utf-8') as fh:
            writer = csv.writer(fh)
            writer.writerow(EXPORT_COLUMNS)
            for r in responses:
                s = sessions.get(r.session_id)
                b = blocks.get(r.block_id)
                writer.writerow([
                    r.session_id,
                    s.participant_id if s else '',
                    s.status if s else '',
                    r.block_id,
                    r.block_type,
                    b.title if b else '',
                    r.response if isinstance(r.response, str) else json.dumps(public_response(r.response), default=str),
                    r.time_spent,
                    _aware(r.updated_at).isoformat(),
                ])
    logger.info("export written study=%s rows=%d path=%s", study_id, len(responses), path)
    return {'path': str(path), 'rows': len(responses), 'filename': f"study_{study_id}_responses.csv"}
