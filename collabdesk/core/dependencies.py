"""
FastAPI dependency providers for service collaborators.

Routes never build collaborators from module globals; tests swap these out
with ``app.dependency_overrides``.
"""
from collabdesk.core.timeutil import Clock, utcnow
from collabdesk.services.email_client import EmailClient
from collabdesk.workers.jobs import JobDispatcher


def get_clock() -> Clock:
    return utcnow


def get_dispatcher() -> JobDispatcher:
    return JobDispatcher()


def get_email_client() -> EmailClient:
    return EmailClient()
