"""
Notifications — Slack webhook messages when a run ends.

A notification failure never affects the run.
"""
import logging
import requests

from leadpipe.config import SLACK_WEBHOOK_URL

logger = logging.getLogger('services.notifications')


def _post(blocks, run_id):
    requests.post(SLACK_WEBHOOK_URL, json={'blocks': blocks}, timeout=10)
    logger.info("Run %s notification sent", run_id[:8])


def notify_run_complete(run):
    """Post a completion summary with row counts and usage totals."""
    if not SLACK_WEBHOOK_URL:
        return

    try:
        totals = run.totals or {}
        label = run.name or run.id[:8]
        blocks = [
            {
                'type': 'header',
                'text': {'type': 'plain_text', 'text': f"Enrichment run completed — {label}"},
            },
            {
                'type': 'section',
                'fields': [
                    {'type': 'mrkdwn', 'text': f"*Rows in:* {run.input_count or 0}"},
                    {'type': 'mrkdwn', 'text': f"*Rows out:* {run.output_count or 0}"},
                    {'type': 'mrkdwn', 'text': f"*Steps:* {len(run.pipeline or [])}"},
                    {'type': 'mrkdwn', 'text': f"*API calls:* {totals.get('api_calls', 0)}"},
                    {'type': 'mrkdwn', 'text': f"*Cache hits:* {totals.get('cache_hits', 0)}"},
                    {'type': 'mrkdwn', 'text': f"*Credits:* {totals.get('credits_used', 0)}"},
                ],
            },
        ]
        if run.summary:
            blocks.append({'type': 'section', 'text': {'type': 'mrkdwn', 'text': f"_{run.summary}_"}})
        _post(blocks, run.id)
    except Exception:
        logger.error("Failed to send notification for run %s", run.id[:8], exc_info=True)


def notify_run_failed(run):
    """Post a failure alert naming the step that halted the run."""
    if not SLACK_WEBHOOK_URL:
        return

    try:
        label = run.name or run.id[:8]
        blocks = [
            {
                'type': 'header',
                'text': {'type': 'plain_text', 'text': f"Enrichment run FAILED — {label}"},
            },
            {
                'type': 'section',
                'fields': [
                    {'type': 'mrkdwn', 'text': f"*Step:* {run.current_step or 'pre-flight'}"},
                    {'type': 'mrkdwn', 'text': f"*Rows in:* {run.input_count or 0}"},
                ],
            },
        ]
        if run.error:
            blocks.append({
                'type': 'section',
                'text': {'type': 'mrkdwn', 'text': f"*Error:* ```{run.error[:500]}```"},
            })
        _post(blocks, run.id)
    except Exception:
        logger.error("Failed to send failure notification for run %s", run.id[:8], exc_info=True)
