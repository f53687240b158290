"""
WSGI / Flask CLI entry point for the Compliance Journey Platform.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi seed-journey-templates
    flask --app wsgi run-job journey_snapshot_daily
"""

from app import create_app

app = create_app()
