"""Copy for workflow notifications.

Each template renders to a short in-app title/body and an HTML email. Templates take
plain ``data`` dicts so callers never build message text themselves.
"""

from html import escape
from typing import Any, Dict, NamedTuple

from app import config


class Template(NamedTuple):
    title: str
    body: str
    category: str
    deep_link: str
    cta_label: str
    cta_path: str


TEMPLATES: Dict[str, Template] = {
    "new_lead": Template(
        title="New service lead",
        body="{vehicle} needs {category} near {zip}. Accept the lead to hold the job and quote.",
        category="lead",
        deep_link="request:{request_id}",
        cta_label="Open inbox",
        cta_path="/pro/inbox",
    ),
    "lead_accepted": Template(
        title="A professional is on your request",
        body="{business_name} accepted your {category} request for your {vehicle}.",
        category="lead",
        deep_link="request:{request_id}",
        cta_label="View request",
        cta_path="/my-requests",
    ),
    "quote_received": Template(
        title="New quote received",
        body="{business_name} quoted ${estimated_price:.2f} for your {vehicle}.",
        category="quote",
        deep_link="quote:{quote_id}",
        cta_label="Compare quotes",
        cta_path="/my-requests",
    ),
    "quote_selected": Template(
        title="Your quote was selected",
        body="The customer selected your ${estimated_price:.2f} quote. Confirm within {minutes} minutes or it expires.",
        category="quote",
        deep_link="quote:{quote_id}",
        cta_label="Confirm quote",
        cta_path="/pro/dashboard",
    ),
    "quote_confirmed": Template(
        title="Appointment confirmed",
        body="{business_name} confirmed your appointment for your {vehicle}.",
        category="appointment",
        deep_link="appointment:{appointment_id}",
        cta_label="View appointment",
        cta_path="/appointments",
    ),
    "quote_expired": Template(
        title="Quote confirmation expired",
        body=(
            "{business_name} did not confirm your ${estimated_price:.2f} quote in time. "
            "Your request is still active and you can select another quote."
        ),
        category="quote",
        deep_link="request:{request_id}",
        cta_label="View available quotes",
        cta_path="/my-requests",
    ),
    "quote_expired_pro": Template(
        title="Confirmation window missed",
        body="Your ${estimated_price:.2f} quote for the {vehicle} expired before it was confirmed.",
        category="quote",
        deep_link="quote:{quote_id}",
        cta_label="Open dashboard",
        cta_path="/pro/dashboard",
    ),
    "appointment_scheduled": Template(
        title="Appointment time set",
        body="{business_name} scheduled your {vehicle} for {starts_at}.",
        category="appointment",
        deep_link="appointment:{appointment_id}",
        cta_label="View appointment",
        cta_path="/appointments",
    ),
    "appointment_completed": Template(
        title="Job completed",
        body="{business_name} marked the work on your {vehicle} as completed.",
        category="appointment",
        deep_link="appointment:{appointment_id}",
        cta_label="Leave a review",
        cta_path="/appointments",
    ),
    "appointment_cancelled": Template(
        title="Appointment cancelled",
        body="The appointment for the {vehicle} was cancelled ({reason}).",
        category="appointment",
        deep_link="appointment:{appointment_id}",
        cta_label="View details",
        cta_path="/appointments",
    ),
}


class RenderedMessage(NamedTuple):
    title: str
    body: str
    category: str
    deep_link: str
    html: str


def render(template_name: str, data: Dict[str, Any]) -> RenderedMessage:
    template = TEMPLATES[template_name]
    title = template.title.format(**data)
    body = template.body.format(**data)
    link = f"{config.APP_BASE_URL}{template.cta_path}"
    html = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <h1 style="color: #111827;">{escape(title)}</h1>
      <p>{escape(body)}</p>
      <div style="margin: 30px 0;">
        <a href="{escape(link)}"
           style="background-color: #2563eb; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px; display: inline-block;">
          {escape(template.cta_label)}
        </a>
      </div>
      <p style="color: #9ca3af; font-size: 12px;">
        This is an automated notification from DoneEZ. Please do not reply to this email.
      </p>
    </div>
    """
    return RenderedMessage(
        title=title,
        body=body,
        category=template.category,
        deep_link=template.deep_link.format(**data),
        html=html,
    )
