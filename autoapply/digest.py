"""Per-recipient daily digests: one email per (recipient, posting, day)."""
from __future__ import annotations

import smtplib
from datetime import date, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Protocol

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from autoapply.config import Settings
from autoapply.db import Application, Database, DigestBatch, Posting, today, utcnow
from autoapply.errors import AutoApplyError
from autoapply.log import get_logger
from autoapply.retry import retry

log = get_logger(__name__)

EXCERPT_CHARS = 500
STALE_SENDING = timedelta(minutes=15)
# how many days ahead track() looks for an unsent batch
MAX_ROLLOVER_DAYS = 7


class MailSender(Protocol):
    def send(self, to_addr: str, subject: str, text: str, html: str) -> None: ...


@retry(max_attempts=3, base_delay=3.0, retryable=(smtplib.SMTPException, OSError))
def _smtp_send(
    host: str, port: int, user: str, password: str,
    from_addr: str, to_addr: str, msg: MIMEMultipart,
) -> None:
    with smtplib.SMTP(host, port) as server:
        server.starttls()
        server.login(user, password)
        server.sendmail(from_addr, [to_addr], msg.as_string())


class Mailer:
    def __init__(self, host: str, port: int, user: str, password: str, from_addr: str) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_addr = from_addr or user

    @classmethod
    def from_settings(cls, settings: Settings) -> Mailer:
        return cls(
            settings.smtp_host, settings.smtp_port, settings.smtp_user,
            settings.smtp_password, settings.from_email,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    def send(self, to_addr: str, subject: str, text: str, html: str) -> None:
        if not self.configured:
            raise AutoApplyError("SMTP not configured (set SMTP_HOST, SMTP_USER, SMTP_PASSWORD in .env)")
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_addr
        msg["To"] = to_addr
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        _smtp_send(self.host, self.port, self.user, self.password, self.from_addr, to_addr, msg)
        log.info("Email sent to %s", to_addr)


_CELL = "border:1px solid #ddd;padding:5px 8px;text-align:left"


def _excerpt(app: Application) -> str:
    text = " ".join((app.profile_text or "").split())
    return text[:EXCERPT_CHARS] + "..." if text else "CV text not available"


def _applicant_row(i: int, app: Application) -> list[str]:
    return [
        str(i),
        app.applicant_name or "Not provided",
        app.applicant_email or "-",
        app.applicant_phone or "-",
        f"{app.applied_at:%d %b %H:%M}",
    ]


def _render_text(heading: list[str], applicants: list[Application]) -> str:
    lines = heading + [""]
    for i, app in enumerate(applicants, start=1):
        _, name, email, phone, _ = _applicant_row(i, app)
        lines.extend([
            f"{i}. {name}",
            f"   Email: {email}",
            f"   Phone: {phone}",
            f"   Applied: {app.applied_at:%Y-%m-%d %H:%M} UTC",
            f"   CV summary: {_excerpt(app)}",
            "",
        ])
    return "\n".join(lines)


def _render_html(heading: list[str], applicants: list[Application]) -> str:
    title, *facts = heading
    parts = [
        "<div style=\"font-family:-apple-system,'Segoe UI',Roboto,sans-serif;max-width:900px;margin:0 auto;padding:16px;color:#333\">",
        f'<h1 style="margin:0 0 8px;color:#2c3e50">{escape(title)}</h1>',
    ]
    parts.extend(f"<p style='margin:4px 0'>{escape(fact)}</p>" for fact in facts if fact)

    header = "".join(f'<th style="{_CELL};background:#f5f7fa">{h}</th>' for h in ("#", "Name", "Email", "Phone", "Applied"))
    parts.append(f'<table style="border-collapse:collapse;width:100%;font-size:13px;margin:12px 0"><tr>{header}</tr>')
    for i, app in enumerate(applicants, start=1):
        cells = "".join(f'<td style="{_CELL}">{escape(c)}</td>' for c in _applicant_row(i, app))
        parts.append(f"<tr>{cells}</tr>")
    parts.append("</table>")

    for i, app in enumerate(applicants, start=1):
        parts.append(f'<h3 style="margin:14px 0 4px">Applicant {i}: {escape(app.applicant_name or "Not provided")}</h3>')
        parts.append(f'<p style="margin:4px 0;color:#555">{escape(_excerpt(app))}</p>')
    parts.append('<p style="font-size:11px;color:#999">Sent once daily with every application received for this position.</p>')
    parts.append("</div>")
    return "\n".join(parts)


def render_digest(posting: Posting | None, posting_id: str, applicants: list[Application], on: date) -> tuple[str, str, str]:
    """Return ``(subject, text, html)`` for one batch."""
    title = posting.title if posting and posting.title else f"Job {posting_id}"
    heading = [
        "Daily Application Summary",
        on.strftime("%A, %d %B %Y"),
        f"Position: {title}",
        f"Company: {(posting.company if posting else None) or 'Not specified'}",
        f"Location: {(posting.location if posting else None) or 'Not specified'}",
        f"Total applications: {len(applicants)}",
    ]
    subject = f"Daily Application Summary - {title} ({len(applicants)} Applicants)"
    return subject, _render_text(heading, applicants), _render_html(heading, applicants)


class DigestBatcher:
    def __init__(self, db: Database, mailer: MailSender) -> None:
        self.db = db
        self.mailer = mailer

    def track(self, recipient: str, posting_id: str, application_id: str, on: date | None = None) -> int:
        """Add an application to the recipient's batch for the day; returns the batch id.

        Tracking the same application twice is a no-op. A batch that already
        went out is never reopened: the application goes into the next day's.
        """
        on = on or today()
        recipient = recipient.strip().lower()
        for _ in range(2):
            try:
                with self.db.session() as s:
                    already = s.scalar(select(Application.digest_id).where(Application.id == application_id))
                    if already is not None:
                        log.debug("Application %s already in digest #%d", application_id, already)
                        return already
                    batch = self._open_batch(s, recipient, posting_id, on)
                    if application_id not in batch.application_ids:
                        batch.application_ids = [*batch.application_ids, application_id]
                    batch.applicant_count = len(batch.application_ids)
                    batch.updated_at = utcnow()
                    s.flush()
                    s.execute(
                        update(Application)
                        .where(Application.id == application_id)
                        .values(included_in_digest=True, digest_id=batch.id)
                    )
                    batch_id = batch.id
                break
            except IntegrityError:
                # a concurrent track created the batch; go again and append to it
                continue
        else:
            raise AutoApplyError(f"could not upsert digest batch for {recipient}/{posting_id}")

        log.info("Application %s tracked in digest #%d for %s", application_id, batch_id, recipient)
        return batch_id

    track_for_digest = track

    def _open_batch(self, s, recipient: str, posting_id: str, on: date) -> DigestBatch:
        day = on
        for _ in range(MAX_ROLLOVER_DAYS):
            batch = s.scalar(
                select(DigestBatch).where(
                    DigestBatch.recipient == recipient,
                    DigestBatch.posting_id == posting_id,
                    DigestBatch.digest_date == day,
                )
            )
            if batch is None:
                batch = DigestBatch(
                    recipient=recipient, posting_id=posting_id, digest_date=day,
                    application_ids=[], applicant_count=0,
                )
                s.add(batch)
                return batch
            if not batch.email_sent:
                return batch
            day += timedelta(days=1)
        raise AutoApplyError(f"no unsent digest slot for {recipient}/{posting_id} near {on}")

    def flush(self, on: date | None = None) -> dict[str, int]:
        """Send every unsent batch dated *on* or earlier.

        Earlier days are included so a batch whose send failed, or one opened
        after that day's flush had already run, goes out on the next flush.
        """
        on = on or today()
        with self.db.session() as s:
            batch_ids = s.scalars(
                select(DigestBatch.id)
                .where(DigestBatch.digest_date <= on, DigestBatch.email_sent.is_(False))
                .order_by(DigestBatch.digest_date, DigestBatch.recipient, DigestBatch.id)
            ).all()

        if not batch_ids:
            log.info("No pending digests up to %s", on)
            return {"sent": 0, "failed": 0}

        log.info("Sending %d digests up to %s", len(batch_ids), on)
        sent = failed = 0
        for batch_id in batch_ids:
            outcome = self._send(batch_id)
            if outcome is True:
                sent += 1
            elif outcome is False:
                failed += 1
        log.info("Digest sending complete: %d sent, %d failed", sent, failed)
        return {"sent": sent, "failed": failed}

    def send_batch(self, recipient: str, posting_id: str, on: date | None = None) -> bool:
        on = on or today()
        with self.db.session() as s:
            batch_id = s.scalar(
                select(DigestBatch.id).where(
                    DigestBatch.recipient == recipient.strip().lower(),
                    DigestBatch.posting_id == posting_id,
                    DigestBatch.digest_date == on,
                )
            )
        if batch_id is None:
            log.warning("No digest for %s / %s on %s", recipient, posting_id, on)
            return False
        return self._send(batch_id) is True

    def _claim(self, batch_id: int) -> bool:
        now = utcnow()
        with self.db.session() as s:
            result = s.execute(
                update(DigestBatch)
                .where(
                    DigestBatch.id == batch_id,
                    DigestBatch.email_sent.is_(False),
                    or_(
                        DigestBatch.email_status.in_(("pending", "failed")),
                        and_(DigestBatch.email_status == "sending", DigestBatch.updated_at < now - STALE_SENDING),
                    ),
                )
                .values(email_status="sending", updated_at=now)
            )
            return result.rowcount == 1

    def _send(self, batch_id: int) -> bool | None:
        """True when sent, False when the send failed, None when there was nothing to do."""
        if not self._claim(batch_id):
            log.debug("Digest #%d already sent or being sent", batch_id)
            return None

        with self.db.session() as s:
            batch = s.get(DigestBatch, batch_id)
            posting = s.get(Posting, batch.posting_id)
            applicants = list(s.scalars(
                select(Application)
                .where(Application.id.in_(batch.application_ids or []))
                .order_by(Application.applied_at.desc())
            ))

        if not applicants:
            log.warning("No applicants found for digest #%d", batch_id)
            self._set_status(batch_id, "pending")
            return None

        subject, text, html = render_digest(posting, batch.posting_id, applicants, batch.digest_date)
        try:
            self.mailer.send(batch.recipient, subject, text, html)
        except Exception as exc:
            self._set_status(batch_id, "failed")
            log.error("Failed to send digest #%d to %s: %s", batch_id, batch.recipient, exc)
            return False

        try:
            self._mark_sent(batch_id)
        except SQLAlchemyError as exc:
            # still claimed as "sending"; _claim hands it out again after STALE_SENDING
            log.error(
                "Digest #%d went to %s but could not be recorded as sent; it may be resent after %d min: %s",
                batch_id, batch.recipient, STALE_SENDING.seconds // 60, exc,
            )
            return True
        log.info("Digest #%d sent to %s (%d applicants)", batch_id, batch.recipient, len(applicants))
        return True

    @retry(max_attempts=4, base_delay=0.5, max_delay=5.0, retryable=(OperationalError,))
    def _mark_sent(self, batch_id: int) -> None:
        with self.db.session() as s:
            s.execute(
                update(DigestBatch)
                .where(DigestBatch.id == batch_id, DigestBatch.email_sent.is_(False))
                .values(email_sent=True, email_status="sent", email_sent_at=utcnow(), updated_at=utcnow())
            )

    def _set_status(self, batch_id: int, status: str) -> None:
        with self.db.session() as s:
            s.execute(
                update(DigestBatch).where(DigestBatch.id == batch_id).values(email_status=status, updated_at=utcnow())
            )

    def digest_stats(self, date_from: date | None = None, date_to: date | None = None) -> dict[str, Any]:
        date_to = date_to or today()
        date_from = date_from or date_to
        with self.db.session() as s:
            row = s.execute(
                select(
                    func.count(DigestBatch.id),
                    func.coalesce(func.sum(DigestBatch.applicant_count), 0),
                    func.coalesce(func.sum(case((DigestBatch.email_sent.is_(True), 1), else_=0)), 0),
                )
                .where(DigestBatch.digest_date >= date_from, DigestBatch.digest_date <= date_to)
            ).one()
        total, applicants, sent = row
        return {
            "date_from": date_from.isoformat(),
            "date_to": date_to.isoformat(),
            "total_digests": total,
            "total_applicants": int(applicants or 0),
            "sent": sent,
            "pending": total - sent,
        }
