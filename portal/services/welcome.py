# portal/services/welcome.py
"""
Welcome onboarding: participation documents and the branded welcome email.

A member who accepts the participation waiver and the PASO grant gets one
`emailQueue` entry of type `welcome_onboarding`. Processing an entry renders
the waiver and the grant certificate as PDFs, sends both through Resend and
records the outcome on the entry:

    pending --process--> processing --> sent | failed
    any     --resend-->  replaced by a fresh pending copy
"""
from __future__ import annotations

import datetime as _dt
import html as _html
import logging
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple
from xml.sax.saxutils import escape

from google.cloud import firestore  # type: ignore
from google.cloud.firestore_v1 import FieldFilter
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY, TA_RIGHT
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer

from portal.core.config import settings
from portal.services.locks import SingleFlight
from portal.services.mailer import Mailer
from portal.services.store import C_EMAIL_QUEUE, C_GRANTS, C_WAIVERS, _as_utc, _server_ts, _utc_now

log = logging.getLogger(__name__)

WELCOME_TYPE = "welcome_onboarding"
WAIVER_VERSION = "1.0"
WELCOME_SUBJECT = "Welcome to El Paso Verse - Your Participation Documents"
WAIVER_FILENAME = "El_Paso_Verse_Participation_Waiver.pdf"
GRANT_FILENAME = "El_Paso_Verse_PASO_Grant_Certificate.pdf"

_EPOCH = _dt.datetime(1970, 1, 1, tzinfo=_dt.timezone.utc)

WAIVER_SECTIONS: List[Tuple[str, str]] = [
    ("1. Nature and Spirit of the Project",
     "This project forms part of the Kamara / El Paso Verse creative universe, an independent, long-term "
     "creative vision initiated and developed by Harry West, and sustained through the personal vision, "
     "goodwill, trust, and continued effort of its creator(s). The Participant acknowledges that this project "
     "would not exist but for the commitment and perseverance of its creator(s), that it is pioneering in "
     "spirit, carving its own path outside conventional production models, and that it is pursued against "
     "significant practical, financial, and structural obstacles, particularly in today's entertainment "
     "industry landscape. The project is developed on a best-efforts basis, with limited resources, "
     "progressive financing, and open-ended timelines, and may include films, short works, experimental "
     "productions, and related creative activities."),
    ("2. Risk, Uncertainty, and No Guarantees",
     "The Participant understands that development, financing, production, post-production, exploitation, "
     "and/or monetization may be delayed, paused, extended, or may not ultimately occur. No promises or "
     "guarantees have been made regarding funding, payment timing, completion, commercial success, "
     "distribution, or monetization. Participation is voluntary and undertaken with full awareness of these "
     "realities."),
    ("3. Rewards, Goodwill, and Voluntary Contributions",
     "Participation in the project may, but does not necessarily, give rise to recognition, opportunities, or "
     "future rewards. Any compensation, profit participation, ownership interest, credit, PASO allocation, or "
     "other benefit shall arise only if expressly set forth in a separate written agreement. No expectation of "
     "reward is implied by participation alone. Any assistance, contribution, service, resource, or support "
     "provided to the project is given voluntarily and in good faith, and shall be deemed gratuitous unless "
     "expressly agreed otherwise in a separate written contract."),
    ("4. Entity-Only Responsibility and Waiver of Claims",
     "Any contractual, financial, or labor obligations, if applicable, exist solely at the level of the "
     "producing entity, if any. The Participant agrees that no personal liability or recourse exists against "
     "any individual involved in the project, including the creator(s), director(s), producer(s), "
     "administrator(s), shareholder(s), or representatives, in their personal capacity. The Participant "
     "irrevocably waives any right to bring claims or proceedings (judicial or extrajudicial) against any "
     "such individual arising out of or related to participation in the project."),
    ("5. No Blocking Actions; Personal Circumstances",
     "Changes in the Participant's personal, financial, or emotional circumstances do not create any "
     "obligation on the project or its participants. The Participant agrees not to seek injunctive relief or "
     "any action intended to delay, block, or interfere with the project."),
    ("6. Legal Limits",
     "This waiver does not apply in cases of willful misconduct or fraud, solely to the extent finally "
     "determined by a competent court under applicable law."),
    ("7. Informed Consent and Welcome",
     "The Participant confirms that they have read and understood this document and consciously accept "
     "participation in a vision-driven, pioneering project operating within a challenging and uncertain "
     "industry environment."),
]

GRANT_CLAUSES: List[Tuple[str, str]] = [
    ("Purpose",
     "PASO is granted as recognition of participation, belief, and alignment with the El Paso Verse journey. "
     "It reflects presence in the world-building process and contribution to the shared vision over time."),
    ("Usage",
     "Within the El Paso Verse ecosystem, PASO may be used for participation in the El Paso Verse world; "
     "access to experiences, initiatives, or future layers of the project; and community and governance "
     "functions as they emerge."),
    ("Important",
     "PASO is not equity, ownership, or a claim on profits. Its value is rooted in participation and "
     "belonging, not guarantees. Grant amounts are determined using high-level participation logic as "
     "described in the Vision Paper."),
    ("Liquidity & Evolution",
     "PASO may evolve over time and may become transferable or tradable in the future, subject to the "
     "project's direction and applicable frameworks. No guarantee is made regarding liquidity, markets, or "
     "future value."),
]


def format_date(ts: Any = None) -> str:
    """Stored timestamp (datetime or ISO string) as a readable UTC date; now when missing."""
    if isinstance(ts, str):
        try:
            ts = _dt.datetime.fromisoformat(ts)
        except ValueError:
            ts = None
    when = _as_utc(ts) or _utc_now()
    return when.strftime("%B %d, %Y %I:%M %p UTC")


# ───────────────────────── PDF documents ─────────────────────────
def _styles() -> Dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    body = base["BodyText"]
    return {
        "title": ParagraphStyle("DocTitle", parent=base["Title"], fontSize=18, leading=22),
        "center": ParagraphStyle("Center", parent=body, alignment=TA_CENTER),
        "heading": ParagraphStyle("Clause", parent=body, fontName="Helvetica-Bold", spaceBefore=6),
        "body": ParagraphStyle("Justified", parent=body, alignment=TA_JUSTIFY),
        "right": ParagraphStyle("Right", parent=body, alignment=TA_RIGHT),
        "name": ParagraphStyle("Recipient", parent=base["Title"], fontSize=18, leading=22),
        "amount": ParagraphStyle("Amount", parent=base["Title"], fontSize=36, leading=44),
    }


def _participant(entry: Dict[str, Any]) -> str:
    return escape(entry.get("displayName") or entry.get("to") or "Pioneer")


def render_waiver_pdf(entry: Dict[str, Any], waiver: Dict[str, Any]) -> bytes:
    st = _styles()
    accepted = format_date(waiver.get("timestamp"))
    name = _participant(entry)

    elems = [
        Paragraph("STANDARD PARTICIPATION INTAKE WAIVER", st["title"]),
        Paragraph("Kamara / El Paso Verse, an Ind. Vision-Driven Creative Project", st["center"]),
        Spacer(1, 0.3 * inch),
        Paragraph("<u>ACCEPTANCE RECORD</u>", st["heading"]),
        Paragraph(f"Participant: {name}", st["body"]),
        Paragraph(f"Email: {escape(entry.get('to') or '')}", st["body"]),
        Paragraph(f"Date: {accepted}", st["body"]),
        Paragraph(f"IP Address: {escape(waiver.get('ipAddress') or 'Recorded')}", st["body"]),
        Paragraph(f"Document Version: {waiver.get('version') or WAIVER_VERSION}", st["body"]),
        Spacer(1, 0.3 * inch),
        Paragraph("READ CAREFULLY BEFORE PARTICIPATING", st["heading"]),
        Paragraph('The undersigned ("Participant") acknowledges and agrees as follows:', st["body"]),
    ]
    for title, text in WAIVER_SECTIONS:
        elems.append(Paragraph(title, st["heading"]))
        elems.append(Paragraph(escape(text), st["body"]))

    elems += [
        Spacer(1, 0.3 * inch),
        Paragraph("<u>ELECTRONIC ACCEPTANCE</u>", st["heading"]),
        Paragraph(f"This document was electronically accepted by {name} on {accepted}.", st["body"]),
        Paragraph("The acceptance was recorded with timestamp and IP address verification.", st["body"]),
    ]

    buf = BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=letter, leftMargin=50, rightMargin=50, topMargin=50, bottomMargin=50)
    doc.build(elems)
    return buf.getvalue()


def _certificate_border(canvas, doc) -> None:
    width, height = doc.pagesize
    canvas.saveState()
    canvas.rect(30, 30, width - 60, height - 60)
    canvas.rect(35, 35, width - 70, height - 70)
    canvas.restoreState()


def render_grant_pdf(entry: Dict[str, Any], grant: Dict[str, Any]) -> bytes:
    st = _styles()
    amount = grant.get("pasoAmount") or entry.get("pasoAmount") or settings.signup_bonus

    elems = [
        Paragraph("EL PASO VERSE", st["title"]),
        Paragraph("PASO PARTICIPATION GRANT", st["center"]),
        Spacer(1, 0.3 * inch),
        Paragraph("<b>Certificate of Grant</b>", st["center"]),
        Spacer(1, 0.3 * inch),
        Paragraph("This PASO Participation Grant is issued to:", st["center"]),
        Paragraph(_participant(entry), st["name"]),
        Spacer(1, 0.2 * inch),
        Paragraph("One-Time PASO Allocation:", st["center"]),
        Paragraph(f"{amount} PASO", st["amount"]),
        Spacer(1, 0.2 * inch),
    ]
    for title, text in GRANT_CLAUSES:
        elems.append(Paragraph(f"{escape(title)}:", st["heading"]))
        elems.append(Paragraph(escape(text), st["body"]))

    elems += [
        Spacer(1, 0.3 * inch),
        Paragraph(f"<i>Granted on: {format_date(grant.get('timestamp'))}</i>", st["right"]),
        Paragraph("<b>Harry West</b>", st["right"]),
        Paragraph("on behalf of El Paso Verse", st["right"]),
    ]

    buf = BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=letter, leftMargin=60, rightMargin=60, topMargin=60, bottomMargin=60)
    doc.build(elems, onFirstPage=_certificate_border, onLaterPages=_certificate_border)
    return buf.getvalue()


# ───────────────────────── Email body ─────────────────────────
def render_welcome_html(display_name: str | None, paso_amount: int) -> tuple[str, str]:
    name = _html.escape(display_name or "Pioneer")
    portal_url = f"{settings.ui_origin.rstrip('/')}/members"
    year = _utc_now().year
    html = f"""\
<!doctype html>
<html>
  <body style="margin:0;padding:40px 20px;background:#f5f5f5;font-family:Georgia,'Times New Roman',serif;">
    <table role="presentation" width="100%" cellspacing="0" cellpadding="0"
           style="max-width:600px;margin:0 auto;background:#F5E6D3;border:3px solid #8B4513;">
      <tr>
        <td style="background:#3A2820;padding:30px;text-align:center;">
          <h1 style="color:#C9A961;margin:0;font-size:28px;letter-spacing:3px;">EL PASO VERSE</h1>
          <p style="color:#F5E6D3;margin:10px 0 0 0;font-size:14px;letter-spacing:2px;">WELCOME TO THE FRONTIER</p>
        </td>
      </tr>
      <tr>
        <td style="padding:40px 30px;color:#3A2820;">
          <h2 style="margin:0 0 20px 0;font-size:24px;">Welcome, {name}</h2>
          <p style="font-size:16px;line-height:1.6;margin:0 0 20px 0;">
            You are now officially part of the El Paso Verse community. Your journey into the 1880 frontier begins here.
          </p>
          <div style="background:#fff;border:2px solid #C9A961;padding:25px;margin:30px 0;text-align:center;">
            <p style="color:#8B4513;margin:0 0 10px 0;font-size:14px;text-transform:uppercase;">Your PASO Grant</p>
            <p style="color:#C9A961;margin:0;font-size:48px;font-weight:bold;">{paso_amount} PASO</p>
          </div>
          <p style="font-size:16px;line-height:1.6;margin:0 0 20px 0;">
            Attached to this email, you will find your official participation documents:
          </p>
          <ul style="font-size:15px;line-height:1.8;margin:0 0 30px 0;padding-left:20px;">
            <li><strong>Participation Waiver</strong>: your signed agreement to participate in this vision-driven project</li>
            <li><strong>PASO Grant Certificate</strong>: official record of your PASO allocation</li>
          </ul>
          <div style="text-align:center;margin:30px 0;">
            <a href="{portal_url}" target="_blank"
               style="display:inline-block;background:#8B4513;color:#F5E6D3;padding:15px 40px;text-decoration:none;
                      font-size:16px;font-weight:bold;text-transform:uppercase;">Enter the Community Portal</a>
          </div>
        </td>
      </tr>
      <tr>
        <td style="background:#3A2820;padding:25px;text-align:center;">
          <p style="color:#C9A961;margin:0 0 10px 0;font-size:12px;">Adventure into 1880</p>
          <p style="color:#8B7355;margin:0;font-size:11px;">&copy; {year} El Paso Verse. A community-driven frontier.</p>
        </td>
      </tr>
    </table>
  </body>
</html>
"""
    text = "\n".join([
        f"Welcome, {display_name or 'Pioneer'}",
        "",
        "You are now officially part of the El Paso Verse community.",
        f"Your PASO grant: {paso_amount} PASO",
        "",
        "Your participation waiver and PASO grant certificate are attached.",
        f"Enter the community portal: {portal_url}",
    ])
    return html, text


# ───────────────────────── Queue ─────────────────────────
class WelcomeQueue:
    def __init__(self, db, mailer: Mailer | None = None, paso_amount: int | None = None):
        self.db = db
        self.mailer = mailer or Mailer()
        self.paso_amount = int(paso_amount if paso_amount is not None else settings.signup_bonus)
        self._processing = SingleFlight()

    def _col(self):
        return self.db.collection(C_EMAIL_QUEUE)

    def accept_documents(self, user_id: str, email: str, display_name: str | None = None,
                         ip: str | None = None) -> Optional[str]:
        """Record the waiver and grant acceptance, then queue the welcome email."""
        if self.db is None:
            log.warning("[welcome] Firestore not available - cannot record acceptance for %s", user_id)
            return None
        try:
            self.db.collection(C_WAIVERS).add({
                "userId": user_id,
                "email": email,
                "ipAddress": ip,
                "version": WAIVER_VERSION,
                "timestamp": _server_ts(),
            })
            self.db.collection(C_GRANTS).add({
                "userId": user_id,
                "pasoAmount": self.paso_amount,
                "timestamp": _server_ts(),
            })
        except Exception as e:
            log.error("[welcome] error recording acceptance for %s: %s", user_id, e)
            return None
        return self.enqueue(user_id, email, display_name)

    def enqueue(self, user_id: str, to: str, display_name: str | None = None) -> Optional[str]:
        if self.db is None:
            return None
        try:
            _, ref = self._col().add({
                "type": WELCOME_TYPE,
                "to": to,
                "userId": user_id,
                "displayName": display_name,
                "pasoAmount": self.paso_amount,
                "status": "pending",
                "createdAt": _server_ts(),
            })
        except Exception as e:
            log.error("[welcome] error queueing welcome email for %s: %s", user_id, e)
            return None
        return ref.id

    def _latest(self, collection: str, user_id: str, default: Dict[str, Any]) -> Dict[str, Any]:
        col = self.db.collection(collection)
        try:
            snaps = (
                col.where(filter=FieldFilter("userId", "==", user_id))
                   .order_by("timestamp", direction=firestore.Query.DESCENDING)
                   .limit(1)
                   .get()
            )
            rows = [s.to_dict() for s in snaps]
        except Exception as e:
            log.warning("[welcome] %s index query failed, sorting in memory: %s", collection, e)
            rows = [s.to_dict() for s in col.where(filter=FieldFilter("userId", "==", user_id)).get()]
            rows.sort(key=lambda d: _as_utc(d.get("timestamp")) or _EPOCH, reverse=True)
        return rows[0] if rows else dict(default)

    def _mark(self, ref, fields: Dict[str, Any]) -> None:
        try:
            ref.update(fields)
        except Exception as e:
            log.error("[welcome] could not update queue entry %s: %s", ref.id, e)

    def process(self, entry_id: str) -> str:
        """Render and send one queued entry. Returns the entry's resulting status."""
        if self.db is None:
            return "unavailable"

        with self._processing.hold(entry_id) as claimed:
            if not claimed:
                return "processing"
            ref = self._col().document(entry_id)
            try:
                snap = ref.get()
            except Exception as e:
                log.error("[welcome] error loading queue entry %s: %s", entry_id, e)
                return "error"
            if not snap.exists:
                return "not_found"
            entry = snap.to_dict() or {}
            if entry.get("type") != WELCOME_TYPE:
                log.info("[welcome] skipping non-onboarding email type %s", entry.get("type"))
                return "skipped"
            if entry.get("status") != "pending":
                return entry.get("status") or "unknown"

            try:
                ref.update({"status": "processing", "processedAt": _server_ts()})
                user_id = entry.get("userId")
                waiver = self._latest(C_WAIVERS, user_id, {"ipAddress": None})
                grant = self._latest(C_GRANTS, user_id, {"pasoAmount": entry.get("pasoAmount") or self.paso_amount})
                html, text = render_welcome_html(entry.get("displayName"),
                                                 grant.get("pasoAmount") or self.paso_amount)
                self.mailer.send_welcome(entry["to"], WELCOME_SUBJECT, html, text, [
                    (WAIVER_FILENAME, render_waiver_pdf(entry, waiver)),
                    (GRANT_FILENAME, render_grant_pdf(entry, grant)),
                ])
            except Exception as e:
                log.error("[welcome] sending %s to %s failed: %s", entry_id, entry.get("to"), e)
                self._mark(ref, {"status": "failed", "error": str(e), "failedAt": _server_ts()})
                return "failed"

            self._mark(ref, {"status": "sent", "sentAt": _server_ts()})
        log.info("[welcome] welcome email sent to %s", entry.get("to"))
        return "sent"

    def resend(self, entry_id: str, user_id: str | None = None) -> Optional[str]:
        """
        Replace an entry with a fresh pending copy and return the new id. None
        when the entry is missing, belongs to another user, or cannot be copied.
        """
        if self.db is None:
            return None
        ref = self._col().document(entry_id)
        try:
            snap = ref.get()
            if not snap.exists:
                return None
            entry = snap.to_dict() or {}
            if user_id is not None and entry.get("userId") != user_id:
                return None
            for key in ("error", "failedAt", "processedAt", "sentAt"):
                entry.pop(key, None)
            entry.update({"status": "pending", "retriedAt": _server_ts()})
            _, new_ref = self._col().add(entry)
            ref.delete()
        except Exception as e:
            log.error("[welcome] error requeueing %s: %s", entry_id, e)
            return None
        log.info("[welcome] queue entry %s requeued as %s", entry_id, new_ref.id)
        return new_ref.id
