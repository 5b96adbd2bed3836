"""
Email notification utilities for LDAP User Import.

This module sends operator notifications for failed runs, an unreachable
directory and (optionally) successful run summaries.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LISTED_FAILURES = 10


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if config.get('smtp_tls', True):
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a failed import run.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "LDAP User Import Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from LDAP User Import."
    ])

    return send_email(f"LDAP User Import Alert: {title}", '\n'.join(body_lines), config)


def send_directory_unavailable(error_message: str, config: Dict[str, Any], retry_count: int = 0) -> bool:
    """Send notification when the directory could not be reached or queried."""
    additional_info = {
        'Component': 'Directory source',
        'Retry Attempts': retry_count,
        'Impact': 'Import aborted - no local records were changed'
    }
    return send_failure_notification("Directory Unavailable", error_message, config, additional_info)


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        return f"{minutes}m {runtime_seconds % 60:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_import_summary(summary: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send the run summary.

    Runs with failed objects, lifecycle policy errors or a failed
    reconciliation are sent as alerts; clean runs only when email_on_success
    is enabled.

    Args:
        summary: ImportReport.summary() dictionary
        config: Notification configuration
    """
    failures: List[Dict[str, Any]] = summary.get('failures', []) + summary.get('policy_errors', [])
    reconcile_error = summary.get('reconcile_error')
    alert = bool(failures or reconcile_error)

    if not alert and not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    body_lines = [
        "LDAP User Import Summary Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"  Total runtime: {_format_runtime(summary.get('runtime_seconds', 0))}",
        f"  Directory objects: {summary.get('total_objects', 0)}",
        f"  Users created: {summary.get('created', 0)}",
        f"  Users updated: {summary.get('updated', 0)}",
        f"  Users soft-deleted: {summary.get('trashed', 0)}",
        f"  Users restored: {summary.get('restored', 0)}",
        f"  Users missing from directory: {summary.get('missing', 0)}",
        f"  Failed objects: {summary.get('failed', 0)}",
        ""
    ]

    if failures:
        body_lines.append("Failed Objects:")
        for i, failure in enumerate(failures[:MAX_LISTED_FAILURES], 1):
            body_lines.append(f"  {i}. {failure['dn']}: {failure['error']} - {failure['message']}")
        if len(failures) > MAX_LISTED_FAILURES:
            body_lines.append(f"  ... and {len(failures) - MAX_LISTED_FAILURES} more failures")
        body_lines.append("")

    if reconcile_error:
        body_lines.append(f"Missing record reconciliation failed: {reconcile_error}")
        body_lines.append("")

    body_lines.append("This is an automated message from LDAP User Import.")

    if alert:
        if not config.get('email_on_failure', True):
            return False
        if failures:
            subject = f"LDAP User Import Alert: {len(failures)} object(s) failed"
        else:
            subject = "LDAP User Import Alert: Missing record reconciliation failed"
    else:
        subject = "LDAP User Import: Successful Completion"

    return send_email(subject, '\n'.join(body_lines), config)


def send_test_notification(config: Dict[str, Any]) -> bool:
    """
    Send a test email with the given notification configuration.

    Returns:
        True if test email sent successfully
    """
    body = (
        "This is a test email from LDAP User Import.\n\n"
        "If you receive this message, your email notification configuration is working correctly.\n\n"
        f"- SMTP Server: {config.get('smtp_server', 'not configured')}\n"
        f"- SMTP Port: {config.get('smtp_port', 'not configured')}\n"
        f"- From Address: {config.get('email_from', 'not configured')}\n"
    )
    return send_email("LDAP User Import: Configuration Test", body, config)
