from __future__ import annotations

import os
from dataclasses import dataclass, field
from html import escape

from common.utils import display_score

DEFAULT_APP_URL = "http://localhost:3000"


@dataclass
class TicketSummary:
    id: str
    job_title: str
    company: str
    overall_score: float
    tags: list[str] = field(default_factory=list)


@dataclass
class DigestSummary:
    total_new: int
    high_fit_count: int
    avg_score: float


def resolve_app_url(app_url: str | None = None) -> str:
    return (app_url or os.getenv("APP_URL", "")).strip().rstrip("/") or DEFAULT_APP_URL


def _score_color(score: float) -> str:
    if score >= 80:
        return "#22c55e"
    if score >= 70:
        return "#3b82f6"
    return "#6b7280"


def _tag_chips(tags: list[str], *, font_size: int) -> str:
    return "".join(
        f'<span style="background:#f3f4f6;padding:2px 8px;border-radius:8px;'
        f'font-size:{font_size}px;margin-right:4px">{escape(tag)}</span>'
        for tag in tags
    )


def render_high_fit_alert(
    user_name: str,
    ticket: TicketSummary,
    *,
    app_url: str | None = None,
) -> tuple[str, str]:
    base_url = resolve_app_url(app_url)
    subject = f"\U0001f389 High Fit Alert: {ticket.job_title} at {ticket.company}"
    html = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>High Fit Job Alert</title></head>
<body style="font-family:sans-serif;padding:20px;max-width:600px;margin:0 auto">
  <div style="background:#22c55e;padding:20px;border-radius:10px;color:white;text-align:center">
    <h1 style="margin:0">\U0001f389 High Fit Job Alert!</h1>
  </div>
  <div style="padding:30px;background:white;border:1px solid #e5e7eb;border-top:none">
    <p>Hey {escape(user_name)},</p>
    <p>We found a job that's a great match for you:</p>
    <div style="background:#f9fafb;padding:20px;border-radius:8px;margin:20px 0">
      <h2 style="margin:0 0 10px 0;color:#1f2937">{escape(ticket.job_title)}</h2>
      <p style="color:#6b7280;margin:0 0 15px 0">{escape(ticket.company)}</p>
      <span style="background:#22c55e;color:white;padding:6px 16px;border-radius:12px;font-weight:bold">
        {display_score(ticket.overall_score)} Score
      </span>
      {_tag_chips(ticket.tags, font_size=14)}
    </div>
    <div style="text-align:center;margin-top:30px">
      <a href="{base_url}/dashboard/tickets/{escape(ticket.id)}"
         style="background:#3b82f6;color:white;padding:12px 32px;border-radius:6px;text-decoration:none">
        View Job &amp; Apply
      </a>
    </div>
  </div>
</body>
</html>"""
    return subject, html


def render_daily_digest(
    user_name: str,
    tickets: list[TicketSummary],
    summary: DigestSummary,
    *,
    app_url: str | None = None,
) -> tuple[str, str]:
    base_url = resolve_app_url(app_url)
    plural = "" if summary.total_new == 1 else "s"
    subject = f"\U0001f3af Daily Digest: {summary.total_new} new job{plural} found"

    rows = "".join(
        f"""
    <tr>
      <td style="padding:12px;border-bottom:1px solid #e5e7eb">
        <strong>{escape(ticket.job_title)}</strong><br/>
        <span style="color:#6b7280">{escape(ticket.company)}</span>
      </td>
      <td style="padding:12px;border-bottom:1px solid #e5e7eb;text-align:center">
        <span style="background:{_score_color(ticket.overall_score)};color:white;padding:4px 12px;border-radius:12px;font-weight:bold">{display_score(ticket.overall_score)}</span>
      </td>
      <td style="padding:12px;border-bottom:1px solid #e5e7eb">{_tag_chips(ticket.tags, font_size=12)}</td>
      <td style="padding:12px;border-bottom:1px solid #e5e7eb;text-align:center">
        <a href="{base_url}/dashboard/tickets/{escape(ticket.id)}" style="background:#3b82f6;color:white;padding:6px 16px;border-radius:6px;text-decoration:none">View</a>
      </td>
    </tr>"""
        for ticket in tickets
    )
    if tickets:
        body = f"""
    <h2 style="margin-top:30px;color:#1f2937">New Opportunities</h2>
    <table style="width:100%;border-collapse:collapse;margin-top:20px">
      <thead>
        <tr style="background:#f9fafb">
          <th style="padding:12px;text-align:left">Job</th>
          <th style="padding:12px;text-align:center">Score</th>
          <th style="padding:12px;text-align:left">Tags</th>
          <th style="padding:12px;text-align:center">Action</th>
        </tr>
      </thead>
      <tbody>{rows}
      </tbody>
    </table>"""
    else:
        body = (
            '<p style="text-align:center;color:#6b7280;padding:40px">'
            "No new jobs found today. We'll keep looking!</p>"
        )

    html = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Daily Job Digest</title></head>
<body style="font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;line-height:1.6;color:#333;max-width:800px;margin:0 auto;padding:20px">
  <div style="background:linear-gradient(135deg,#667eea 0%,#764ba2 100%);padding:30px;border-radius:10px 10px 0 0;color:white">
    <h1 style="margin:0 0 10px 0">\U0001f3af Daily Job Digest</h1>
    <p style="margin:0;opacity:0.9">Hey {escape(user_name)}, here are your new opportunities!</p>
  </div>
  <div style="background:white;padding:30px;border:1px solid #e5e7eb;border-top:none;border-radius:0 0 10px 10px">
    <table style="width:100%;text-align:center;margin-bottom:30px">
      <tr>
        <td><div style="font-size:32px;font-weight:bold;color:#3b82f6">{summary.total_new}</div><div style="color:#6b7280">New Jobs</div></td>
        <td><div style="font-size:32px;font-weight:bold;color:#22c55e">{summary.high_fit_count}</div><div style="color:#6b7280">High Fit</div></td>
        <td><div style="font-size:32px;font-weight:bold;color:#8b5cf6">{display_score(summary.avg_score)}</div><div style="color:#6b7280">Avg Score</div></td>
      </tr>
    </table>
    {body}
    <div style="margin-top:30px;padding-top:20px;border-top:1px solid #e5e7eb;text-align:center">
      <a href="{base_url}/dashboard" style="background:#3b82f6;color:white;padding:12px 32px;border-radius:6px;text-decoration:none">View Dashboard</a>
    </div>
    <p style="margin-top:30px;text-align:center;color:#6b7280;font-size:12px">
      Want to pause notifications? <a href="{base_url}/dashboard/settings" style="color:#3b82f6">Manage your settings</a>
    </p>
  </div>
</body>
</html>"""
    return subject, html
