from __future__ import annotations

from dataclasses import dataclass
import html
from string import Template
from typing import Any


@dataclass(frozen=True)
class EmailTemplate:
    subject: Template
    text: Template


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text_body: str
    html_body: str


TEMPLATES: dict[str, EmailTemplate] = {
    "backup_success": EmailTemplate(
        subject=Template("Database Backup Successful - $siteName"),
        text=Template(
            "Backup Completed Successfully\n\n"
            "Your $siteName backup has been completed successfully.\n\n"
            "Backup Details:\n"
            "  Type: $backupType backup\n"
            "  File: $filename\n"
            "  Size: $fileSize\n"
            "  Tables: $tablesCount\n"
            "  Completed: $createdAt\n\n"
            "Backup monitor: $siteUrl/admin/backups\n\n"
            "This is an automated system notification, please do not reply to this email.\n"
        ),
    ),
    "backup_failure": EmailTemplate(
        subject=Template("Database Backup Failed - $siteName"),
        text=Template(
            "Backup Failed\n\n"
            "The scheduled $backupType backup for $siteName did not complete.\n\n"
            "  Error: $errorMessage\n"
            "  Attempted: $attemptedAt\n"
            "  Last successful backup: $lastSuccessfulBackup\n\n"
            "Please review the server logs and the backup monitor at $siteUrl/admin/backups.\n\n"
            "This is an automated system notification, please do not reply to this email.\n"
        ),
    ),
    "contact_form": EmailTemplate(
        subject=Template("Contact Form: $subject - $siteName"),
        text=Template(
            "New Contact Form Submission\n\n"
            "You have received a new message through the $siteName contact form.\n\n"
            "  Name: $name\n"
            "  Email: $email\n"
            "  Subject: $subject\n"
            "  Submitted: $submissionTime\n\n"
            "Message:\n$message\n"
        ),
    ),
}


def format_bytes(size: int | float) -> str:
    # Human readable size with two decimals, e.g. 1.50 MB.
    value = float(max(size, 0))
    units = ["B", "KB", "MB", "GB", "TB"]
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.2f} {units[index]}"


def render_template(name: str, data: dict[str, Any]) -> RenderedEmail:
    """Render a named template; missing placeholders stay visible instead of raising."""
    template = TEMPLATES.get(name)
    if template is None:
        raise KeyError(f"Unknown email template: {name}")
    values = {key: str(value) for key, value in data.items()}
    subject = template.subject.safe_substitute(values)
    text_body = template.text.safe_substitute(values)
    escaped = {key: html.escape(value) for key, value in values.items()}
    html_text = template.text.safe_substitute(escaped)
    paragraphs = "".join(
        f"<p>{block.replace(chr(10), '<br>')}</p>" for block in html_text.strip().split("\n\n")
    )
    html_body = f"<html><body>{paragraphs}</body></html>"
    return RenderedEmail(subject=subject, text_body=text_body, html_body=html_body)
