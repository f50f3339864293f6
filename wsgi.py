"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db migrate -m "description"
    flask --app wsgi db upgrade
    flask --app wsgi import-dtrs legacy_cases.xlsx
"""

from casedesk import create_app

app = create_app()
