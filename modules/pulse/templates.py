"""Invitation email rendering."""

from __future__ import annotations

from abc import ABC, abstractmethod
from urllib.parse import urlencode

import structlog
from jinja2 import Environment, StrictUndefined, select_autoescape

from shared.config import Settings, get_settings
from shared.schemas.delivery import InvitationPayload
from shared.schemas.notifications import EmailAddress, OutboundMessage

logger = structlog.get_logger()

SCALE_LIKERT = "LIKERT_1_5"
SCALE_NPS = "NPS_0_10"

SCALE_SCORES = {
    SCALE_LIKERT: list(range(1, 6)),
    SCALE_NPS: list(range(0, 11)),
}

# Button colours, low score to high
_LIKERT_COLORS = ["#ef4444", "#f97316", "#eab308", "#84cc16", "#22c55e"]
_NPS_COLORS = [
    "#ef4444", "#ef4444", "#f97316", "#f97316", "#f59e0b", "#eab308",
    "#a3e635", "#84cc16", "#4ade80", "#22c55e", "#10b981",
]

_HTML_TEMPLATE = """\
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; background: #f6f9fc; padding: 24px;">
  <div style="display:none">Your weekly pulse check - takes 5 seconds</div>
  <h1 style="color:#1f2937">Your Weekly Pulse</h1>
  <p>Hi {{ user_name }},</p>
  <p>Take 5 seconds to share how you're feeling this week. Your response is
  completely anonymous and helps us build a better workplace.</p>
  <div style="background:#eff6ff; border-radius:8px; padding:16px; margin:16px 0;">
    <p style="font-size:18px; font-weight:bold">{{ question_text }}</p>
  </div>
  <p>Click the number that best represents your answer:</p>
  {% for row in rows %}
  <div>
    {% for option in row %}
    <a href="{{ option.url }}" style="background-color:{{ option.color }}; color:#ffffff; border-radius:6px; display:inline-block; padding:10px 14px; margin:4px; font-weight:bold; text-decoration:none;">{{ option.score }}</a>
    {% endfor %}
  </div>
  {% endfor %}
  <p style="font-size:13px; color:#6b7280"><strong>Your response is anonymous.</strong>
  Individual responses are never shared. We only show aggregates when there are
  at least 5 responses.</p>
  <p style="font-size:13px; color:#6b7280">This link expires in {{ ttl_days }} days.
  You can respond only once per question. If you'd like to adjust when you
  receive these pulses, contact your administrator.</p>
  <p>Thank you for helping make {{ tenant_name }} a better place to work!</p>
</body>
</html>
"""

_TEXT_TEMPLATE = """\
Hi {{ user_name }},

Your weekly pulse for {{ tenant_name }}:

{{ question_text }}

{% for option in options %}{{ option.score }}: {{ option.url }}
{% endfor %}
Your response is anonymous. This link expires in {{ ttl_days }} days.
"""


class Renderer(ABC):
    """Turns a structured invitation into a transport-ready message."""

    @abstractmethod
    def render_invitation(self, payload: InvitationPayload) -> OutboundMessage:
        ...


def response_url(base_url: str, token: str, score: int) -> str:
    query = urlencode({"token": token, "score": score})
    return f"{base_url.rstrip('/')}/pulse/respond?{query}"


class PulseEmailRenderer(Renderer):
    """Default one-tap response email for LIKERT_1_5 and NPS_0_10 questions."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        env = Environment(
            autoescape=select_autoescape(default=True, default_for_string=True),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._html = env.from_string(_HTML_TEMPLATE)
        self._text = Environment(
            autoescape=False, undefined=StrictUndefined
        ).from_string(_TEXT_TEMPLATE)

    def options(self, payload: InvitationPayload) -> list[dict]:
        scale = payload.scale if payload.scale in SCALE_SCORES else SCALE_LIKERT
        if scale != payload.scale:
            logger.warning("pulse_unknown_scale", scale=payload.scale, invite_id=payload.invite_id)
        colors = _NPS_COLORS if scale == SCALE_NPS else _LIKERT_COLORS
        return [
            {
                "score": score,
                "color": colors[i],
                "url": response_url(self.settings.public_base_url, payload.token, score),
            }
            for i, score in enumerate(SCALE_SCORES[scale])
        ]

    def render_invitation(self, payload: InvitationPayload) -> OutboundMessage:
        options = self.options(payload)
        # NPS gets two rows so the buttons fit a phone screen
        rows = [options[:6], options[6:]] if len(options) > 6 else [options]
        context = {
            "user_name": payload.to.name or "there",
            "tenant_name": payload.tenant_name,
            "question_text": payload.question_text,
            "ttl_days": self.settings.invite_ttl_days,
            "options": options,
            "rows": rows,
        }
        return OutboundMessage(
            to=[payload.to],
            subject=f"Your weekly pulse for {payload.tenant_name}",
            html=self._html.render(**context),
            text=self._text.render(**context),
            from_address=EmailAddress(
                email=self.settings.email_from, name=self.settings.email_from_name
            ),
        )
