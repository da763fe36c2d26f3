"""Routers package."""

from . import (
    health,
    auth,
    profile,
    resumes,
    credits,
    billing,
)
