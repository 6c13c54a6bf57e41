"""Periodic sweep: active subscriptions -> preferences -> new matching postings -> applications."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, exists, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from autoapply.db import Application, AutoApplyLog, Database, Posting, Preference, Subscription, utcnow
from autoapply.dispatch import DispatchPipeline
from autoapply.errors import DuplicateApplication, PostingNotFound, QuotaExhausted
from autoapply.expansion import QueryExpansionEngine
from autoapply.log import get_logger, mask
from autoapply.models import StructuredFilter
from autoapply.profiles import latest_profile_text
from autoapply.search import build_query, filter_for_auto_apply

log = get_logger(__name__)


class AutoApplyEngine:
    def __init__(
        self,
        db: Database,
        expansion: QueryExpansionEngine,
        dispatch: DispatchPipeline,
        lookback_hours: int = 24,
        new_postings_limit: int = 20,
    ) -> None:
        self.db = db
        self.expansion = expansion
        self.dispatch = dispatch
        self.lookback = timedelta(hours=lookback_hours)
        self.limit = new_postings_limit

    def process_all_subscriptions(self) -> dict[str, int]:
        log.info("Starting auto-apply cycle")
        try:
            subscriptions = self.active_subscriptions()
        except SQLAlchemyError as exc:
            log.error("Auto-apply cycle aborted, could not load subscriptions: %s", exc)
            return {"processed": 0, "applied": 0}

        if not subscriptions:
            log.info("No active subscriptions to process")
            return {"processed": 0, "applied": 0}

        processed = applied = 0
        for sub in subscriptions:
            try:
                applied += self.process_subscription(sub)
                processed += 1
            except Exception as exc:
                log.error(
                    "Subscription #%d (owner %s) failed: %s",
                    sub.id, mask(sub.owner_id), exc, exc_info=True,
                )
        log.info("Auto-apply cycle complete: %d subscriptions, %d applications", processed, applied)
        return {"processed": processed, "applied": applied}

    def active_subscriptions(self, now: datetime | None = None) -> list[Subscription]:
        now = now or utcnow()
        with self.db.session() as s:
            return list(s.scalars(
                select(Subscription)
                .where(
                    Subscription.status == "active",
                    Subscription.valid_until > now,
                    or_(Subscription.tier == "unlimited", Subscription.jobs_applied < Subscription.max_jobs),
                )
                .order_by(Subscription.id)
            ))

    def process_subscription(self, sub: Subscription) -> int:
        log.info(
            "Processing subscription #%d (owner %s, %s tier, %d applied)",
            sub.id, mask(sub.owner_id), sub.tier, sub.jobs_applied,
        )
        with self.db.session() as s:
            preferences = list(s.scalars(
                select(Preference)
                .where(Preference.subscription_id == sub.id, Preference.is_active.is_(True))
                .order_by(Preference.id)
            ))
            profile_text = latest_profile_text(s, sub.owner_id)

        if not preferences:
            log.info("No preferences set for subscription #%d", sub.id)
            return 0

        applied = 0
        for pref in preferences:
            if self._limit_reached(sub, applied):
                log.info("Basic tier limit of %s reached for subscription #%d", sub.max_jobs, sub.id)
                break
            if not profile_text:
                log.warning("No profile text for owner %s; skipping preference #%d", mask(sub.owner_id), pref.id)
                continue
            try:
                applied += self.process_preference(sub, pref, profile_text, applied)
            except Exception as exc:
                log.error(
                    "Preference #%d of subscription #%d (owner %s) failed: %s",
                    pref.id, sub.id, mask(sub.owner_id), exc, exc_info=True,
                )
        return applied

    @staticmethod
    def _limit_reached(sub: Subscription, applied_this_cycle: int) -> bool:
        return sub.tier != "unlimited" and sub.jobs_applied + applied_this_cycle >= (sub.max_jobs or 0)

    def resolve_filter(self, pref: Preference) -> StructuredFilter:
        if pref.expanded_filter:
            return StructuredFilter.from_dict(pref.expanded_filter)
        flt = self.expansion.expand(pref.category_label, pref.category)
        with self.db.session() as s:
            s.execute(
                update(Preference)
                .where(Preference.id == pref.id)
                .values(expanded_filter=flt.to_dict(), updated_at=utcnow())
            )
        pref.expanded_filter = flt.to_dict()
        return flt

    def process_preference(
        self, sub: Subscription, pref: Preference, profile_text: str, applied_this_cycle: int = 0
    ) -> int:
        log.info("Processing preference #%d: %s in %s", pref.id, pref.category_label, pref.location or "anywhere")
        flt = self.resolve_filter(pref)

        postings = self.find_new_postings(pref, flt, sub.owner_id)
        if not postings:
            log.info("No new postings for preference #%d", pref.id)
            return 0

        relevant = filter_for_auto_apply(postings, flt)
        if relevant:
            with self.db.session() as s:
                s.execute(
                    update(Preference)
                    .where(Preference.id == pref.id)
                    .values(jobs_matched=Preference.jobs_matched + len(relevant))
                )
        else:
            log.info("No relevant postings after filtering for preference #%d (%d found)", pref.id, len(postings))
            return 0

        if sub.tier != "unlimited":
            remaining = (sub.max_jobs or 0) - sub.jobs_applied - applied_this_cycle
            relevant = relevant[:max(0, remaining)]

        applied = 0
        for posting in relevant:
            try:
                self.dispatch.submit(
                    sub.owner_id, posting.id, profile_text,
                    subscription_id=sub.id, preference_id=pref.id,
                )
                applied += 1
            except QuotaExhausted:
                log.info("Subscription #%d ran out of quota mid-cycle", sub.id)
                break
            except (DuplicateApplication, PostingNotFound) as exc:
                log.info("Skipped posting %s for preference #%d: %s", posting.id, pref.id, exc)
            except Exception as exc:
                log.error(
                    "Dispatch failed for posting %s (subscription #%d, preference #%d, owner %s): %s",
                    posting.id, sub.id, pref.id, mask(sub.owner_id), exc,
                )
        log.info("Preference #%d: %d applications queued", pref.id, applied)
        return applied

    def find_new_postings(
        self, pref: Preference, flt: StructuredFilter, owner_id: str, now: datetime | None = None
    ) -> list[Posting]:
        now = now or utcnow()
        since = pref.last_applied_at or now - self.lookback
        location = "remote" if pref.is_remote else pref.location
        built = build_query(flt, location, now=now)
        already_applied = exists().where(Application.owner_id == owner_id, Application.posting_id == Posting.id)
        stmt = (
            select(Posting)
            .where(
                built.predicate,
                ~already_applied,
                or_(Posting.last_updated > since, Posting.scraped_at > since),
            )
            .order_by(*built.ordering)
            .limit(self.limit)
        )
        with self.db.session() as s:
            postings = list(s.scalars(stmt))
        log.debug("Preference #%d: %d new postings since %s", pref.id, len(postings), since)
        return postings

    def get_statistics(self, days: int = 7) -> dict[str, Any]:
        since = utcnow() - timedelta(days=days)
        with self.db.session() as s:
            row = s.execute(
                select(
                    func.count(func.distinct(AutoApplyLog.subscription_id)),
                    func.count(func.distinct(AutoApplyLog.owner_id)),
                    func.count(AutoApplyLog.id),
                    func.coalesce(func.sum(case((AutoApplyLog.status == "applied", 1), else_=0)), 0),
                    func.coalesce(func.sum(case((AutoApplyLog.status == "failed", 1), else_=0)), 0),
                ).where(AutoApplyLog.queued_at > since)
            ).one()
        return {
            "days": days,
            "active_subscriptions": row[0],
            "active_users": row[1],
            "total_applications": row[2],
            "successful_applications": int(row[3]),
            "failed_applications": int(row[4]),
        }
