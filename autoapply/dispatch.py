"""Turn one (owner, posting) match into an application and its follow-up work."""
from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from autoapply.db import Application, AutoApplyLog, Database, Posting, Preference, Subscription, utcnow
from autoapply.digest import DigestBatcher
from autoapply.errors import DuplicateApplication, PostingNotFound, QuotaExhausted
from autoapply.log import get_logger, mask
from autoapply.profiles import extract_contact
from autoapply.queue import WorkQueue
from autoapply.scoring import ScoringEngine

log = get_logger(__name__)

DIGEST_TASK = "dispatch.digest"
SCORING_TASK = "dispatch.scoring"
COUNTERS_TASK = "dispatch.counters"


class DispatchPipeline:
    """``submit`` persists the application, then runs three best-effort steps.

    1. insert the Application (and take one unit of quota) in one transaction
    2. add it to the recipient's digest
    3. queue its ATS score
    4. bump the preference counters

    A failed step 2-4 is logged and handed to the work queue; the application
    row stays behind either way.
    """

    def __init__(self, db: Database, queue: WorkQueue, digests: DigestBatcher, scoring: ScoringEngine) -> None:
        self.db = db
        self.queue = queue
        self.digests = digests
        self.scoring = scoring

    def register(self) -> None:
        self.queue.register(DIGEST_TASK, self._retry_digest, on_failure=self._digest_gave_up)
        self.queue.register(SCORING_TASK, self._retry_scoring)
        self.queue.register(COUNTERS_TASK, self._retry_counters)

    def submit(
        self,
        owner_id: str,
        posting_id: str,
        profile_text: str,
        subscription_id: Optional[int] = None,
        preference_id: Optional[int] = None,
    ) -> str:
        """Return the new application id.

        Raises DuplicateApplication, PostingNotFound, or QuotaExhausted when
        the subscription has nothing left. None of these leave a trace.
        """
        application_id = str(uuid.uuid4())
        contact = extract_contact(profile_text)
        try:
            with self.db.session() as s:
                posting = s.get(Posting, posting_id)
                if posting is None:
                    raise PostingNotFound(posting_id)
                recipient = (posting.email or "").strip()

                if subscription_id is not None:
                    taken = s.execute(
                        update(Subscription)
                        .where(
                            Subscription.id == subscription_id,
                            or_(Subscription.tier == "unlimited", Subscription.jobs_applied < Subscription.max_jobs),
                        )
                        .values(jobs_applied=Subscription.jobs_applied + 1, updated_at=utcnow())
                    )
                    if taken.rowcount != 1:
                        raise QuotaExhausted(subscription_id)

                s.add(Application(
                    id=application_id,
                    owner_id=owner_id,
                    posting_id=posting_id,
                    profile_text=profile_text,
                    status="queued",
                    applicant_name=contact.name,
                    applicant_email=contact.email,
                    applicant_phone=contact.phone,
                    subscription_id=subscription_id,
                    preference_id=preference_id,
                ))
                if subscription_id is not None:
                    s.add(AutoApplyLog(
                        subscription_id=subscription_id,
                        preference_id=preference_id,
                        owner_id=owner_id,
                        posting_id=posting_id,
                        application_id=application_id,
                        status="applied",
                    ))
                s.flush()
        except IntegrityError as exc:
            log.info("Duplicate application skipped: owner %s posting %s", mask(owner_id), posting_id)
            raise DuplicateApplication(owner_id, posting_id) from exc

        log.info("Application %s queued: owner %s posting %s", application_id, mask(owner_id), posting_id)
        self._set_status(application_id, "processing")

        self._step_digest(application_id, recipient, posting_id)
        self._step_scoring(application_id, owner_id, posting_id, profile_text)
        if preference_id is not None:
            self._step_counters(application_id, preference_id)
        return application_id

    def _step_digest(self, application_id: str, recipient: str, posting_id: str) -> None:
        if not recipient:
            log.warning("Posting %s has no recipient email; application %s failed", posting_id, application_id)
            self._fail(application_id, "posting has no recipient email")
            return
        try:
            self.digests.track(recipient, posting_id, application_id)
            self._set_status(application_id, "applied")
        except Exception as exc:
            log.error("Digest tracking failed for application %s (posting %s): %s", application_id, posting_id, exc)
            self._defer(DIGEST_TASK, application_id, {
                "application_id": application_id, "recipient": recipient, "posting_id": posting_id,
            })

    def _step_scoring(self, application_id: str, owner_id: str, posting_id: str, profile_text: str) -> None:
        try:
            self.scoring.queue_scoring(application_id, owner_id, posting_id, profile_text)
        except Exception as exc:
            log.error("Could not queue ATS scoring for application %s: %s", application_id, exc)
            self._defer(SCORING_TASK, application_id, {
                "application_id": application_id, "owner_id": owner_id,
                "posting_id": posting_id, "profile_text": profile_text,
            })

    def _step_counters(self, application_id: str, preference_id: int) -> None:
        try:
            self._bump_preference(preference_id)
        except Exception as exc:
            log.error("Counter update failed for preference #%s (application %s): %s", preference_id, application_id, exc)
            self._defer(COUNTERS_TASK, application_id, {"preference_id": preference_id})

    def _defer(self, task: str, application_id: str, payload: dict) -> None:
        try:
            self.queue.enqueue(task, payload, delay=30, max_attempts=5, backoff=30.0, key=f"{task}:{application_id}")
        except Exception as exc:
            log.error("Could not re-queue %s for application %s, left for reconciliation: %s", task, application_id, exc)

    def _bump_preference(self, preference_id: int) -> None:
        with self.db.session() as s:
            s.execute(
                update(Preference)
                .where(Preference.id == preference_id)
                .values(
                    jobs_applied=Preference.jobs_applied + 1,
                    last_applied_at=utcnow(),
                    updated_at=utcnow(),
                )
            )

    def _set_status(self, application_id: str, status: str, reason: str | None = None) -> None:
        with self.db.session() as s:
            s.execute(
                update(Application)
                .where(Application.id == application_id)
                .values(status=status, failure_reason=reason)
            )

    def _fail(self, application_id: str, reason: str) -> None:
        self._set_status(application_id, "failed", reason)
        with self.db.session() as s:
            s.execute(
                update(AutoApplyLog)
                .where(AutoApplyLog.application_id == application_id)
                .values(status="failed")
            )

    def _retry_digest(self, payload: dict) -> None:
        application_id = payload["application_id"]
        with self.db.session() as s:
            status = s.scalar(select(Application.status).where(Application.id == application_id))
        if status is None:
            log.warning("Application %s no longer exists; dropping digest retry", application_id)
            return
        self.digests.track(payload["recipient"], payload["posting_id"], application_id)
        self._set_status(application_id, "applied")

    def _digest_gave_up(self, payload: dict, exc: BaseException) -> None:
        self._fail(payload["application_id"], f"digest tracking failed: {exc}"[:255])

    def _retry_scoring(self, payload: dict) -> None:
        self.scoring.queue_scoring(
            payload["application_id"], payload["owner_id"], payload["posting_id"], payload["profile_text"],
        )

    def _retry_counters(self, payload: dict) -> None:
        self._bump_preference(payload["preference_id"])
