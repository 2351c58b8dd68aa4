"""Digest rendering: one DigestRun in, an e-mail subject and body out."""

from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Sequence, Tuple

from jinja2 import Environment

from . import evaluator
from .models import Candidate, DigestRun
from .scheduler import END_OF_DAY_SUMMARY, HOURLY_CHECK, LUNCH_REMINDER, MORNING_DIGEST

Section = Tuple[str, List[str]]

_env = Environment(autoescape=True, trim_blocks=True, lstrip_blocks=True)

HTML_TEMPLATE = _env.from_string("""\
<html>
<body style="font-family: Arial, sans-serif; color: #333;">
  <h2>{{ greeting }}</h2>
  {% if summary %}
  <p>
    Tasks due today: <b>{{ summary.tasks_today }}</b> &middot;
    Meetings today: <b>{{ summary.meetings_today }}</b> &middot;
    Upcoming deadlines: <b>{{ summary.upcoming_deadlines }}</b> &middot;
    High priority: <b>{{ summary.high_priority_items }}</b>
  </p>
  {% endif %}
  {% for heading, lines in sections %}
  <h3>{{ heading }}</h3>
  <ul>
    {% for line in lines %}
    <li>{{ line }}</li>
    {% endfor %}
  </ul>
  {% endfor %}
  <p><a href="{{ app_url }}">Open your dashboard</a></p>
</body>
</html>
""")


@dataclass
class DigestEmail:
    """A rendered digest ready for the mailer."""
    subject: str
    text: str
    html: str


def build_prompt_lines(candidates: Sequence[Candidate]) -> List[str]:
    """One line per candidate: "[PRIORITY] Title: message"."""
    return [f"[{c.priority.value.upper()}] {c.title}: {c.message}" for c in candidates]


def mailed_alerts(run: DigestRun) -> List[Candidate]:
    """Alerts listed in the e-mail. The hourly check pushes urgent ones live instead."""
    if run.job_id == HOURLY_CHECK:
        return run.non_urgent
    return run.candidates


def _first_name(run: DigestRun) -> str:
    name = run.user.full_name or run.user.email.split("@")[0]
    return name.split()[0] if name.split() else name


def _morning_sections(run: DigestRun) -> List[Section]:
    schedule = evaluator.today_schedule(run.tasks, run.meetings, run.now)
    lines = [f"{item['time']} - {item['title']} ({item['type']})" for item in schedule]
    return [("Today's schedule", lines)] if lines else []


def _lunch_sections(run: DigestRun, afternoon_end_hour: int) -> List[Section]:
    afternoon_end = run.now.replace(hour=afternoon_end_hour, minute=0, second=0, microsecond=0)
    meetings = evaluator.meetings_between(run.meetings, run.now, afternoon_end)
    due_today = evaluator.due_on(run.tasks, run.now.date(), run.now)
    sections = []
    if meetings:
        lines = [f"{evaluator.clock_time(m.start_time, run.now)} - {m.title}" for m in meetings]
        sections.append(("This afternoon", lines))
    if due_today:
        sections.append(("Still due today", [t.title for t in due_today]))
    return sections


def _end_of_day_sections(run: DigestRun) -> List[Section]:
    today = run.now.date()
    tomorrow = today + timedelta(days=1)
    completed = evaluator.completed_on(run.tasks, today, run.now)
    due_tomorrow = evaluator.due_on(run.tasks, tomorrow, run.now)
    start = run.now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
    meetings = evaluator.meetings_between(run.meetings, start, start + timedelta(days=1))
    sections = []
    if completed:
        sections.append(("Completed today", [t.title for t in completed]))
    if due_tomorrow:
        sections.append(("Due tomorrow", [t.title for t in due_tomorrow]))
    if meetings:
        lines = [f"{evaluator.clock_time(m.start_time, run.now)} - {m.title}" for m in meetings]
        sections.append(("Meetings tomorrow", lines))
    return sections


def build_sections(run: DigestRun, afternoon_end_hour: int = 18) -> List[Section]:
    """Job-specific sections followed by the mailed alerts, empty sections dropped."""
    if run.job_id == MORNING_DIGEST:
        sections = _morning_sections(run)
    elif run.job_id == LUNCH_REMINDER:
        sections = _lunch_sections(run, afternoon_end_hour)
    elif run.job_id == END_OF_DAY_SUMMARY:
        sections = _end_of_day_sections(run)
    else:
        sections = []
    alerts = build_prompt_lines(mailed_alerts(run))
    if alerts:
        sections.append(("Needs your attention", alerts))
    return sections


def _subject(run: DigestRun) -> str:
    day = f"{run.now:%a %b %d}"
    if run.job_id == MORNING_DIGEST:
        return f"Your day at a glance - {day}"
    if run.job_id == LUNCH_REMINDER:
        return f"Afternoon check-in - {day}"
    if run.job_id == END_OF_DAY_SUMMARY:
        return f"End of day summary - {day}"
    return f"{len(run.non_urgent)} item(s) need your attention"


def _greeting(run: DigestRun) -> str:
    name = _first_name(run)
    if run.job_id == MORNING_DIGEST:
        return f"Good morning, {name}!"
    if run.job_id == END_OF_DAY_SUMMARY:
        return f"Nice work today, {name}."
    return f"Hi {name},"


def render_digest(run: DigestRun, app_url: str, afternoon_end_hour: int = 18) -> Optional[DigestEmail]:
    """
    Render a digest e-mail for one run.

    The hourly check only mails when it has alerts; the daily jobs also mail
    their schedule sections.

    Args:
        run: The computed digest run.
        app_url: Link target for the dashboard.
        afternoon_end_hour: Upper bound for the lunch reminder's afternoon window.

    Returns:
        The rendered e-mail, or None if there is nothing to say.
    """
    sections = build_sections(run, afternoon_end_hour)
    if not sections:
        return None

    greeting = _greeting(run)
    summary = run.summary if run.job_id == MORNING_DIGEST else None

    lines = [greeting, ""]
    if summary is not None:
        lines.append(
            f"Tasks due today: {summary.tasks_today} | Meetings today: {summary.meetings_today} | "
            f"Upcoming deadlines: {summary.upcoming_deadlines} | High priority: {summary.high_priority_items}"
        )
        lines.append("")
    for heading, items in sections:
        lines.append(heading)
        lines.extend(f"  - {item}" for item in items)
        lines.append("")
    lines.append(f"Open your dashboard: {app_url}")

    html = HTML_TEMPLATE.render(greeting=greeting, summary=summary, sections=sections, app_url=app_url)
    return DigestEmail(subject=_subject(run), text="\n".join(lines), html=html)


def history_payload(run: DigestRun, email: DigestEmail) -> dict:
    """What gets recorded in notification_history for a sent digest."""
    return {
        "job": run.job_id,
        "subject": email.subject,
        "fired_at": run.now.isoformat(),
        "summary": {
            "tasks_today": run.summary.tasks_today,
            "meetings_today": run.summary.meetings_today,
            "upcoming_deadlines": run.summary.upcoming_deadlines,
            "high_priority_items": run.summary.high_priority_items,
        },
        "alerts": [c.kind.value for c in mailed_alerts(run)],
    }
