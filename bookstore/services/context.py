# bookstore/services/context.py
from dataclasses import dataclass, field
from typing import Callable

from flask import current_app

from ..config import Policy
from ..extensions import db
from ..utils.clock import utcnow


@dataclass
class ServiceContext:
    """What every service operation runs against: a session, the policy, a clock."""

    session: object
    policy: Policy = field(default_factory=Policy)
    clock: Callable = utcnow

    def now(self):
        return self.clock()


def service_context(app=None) -> ServiceContext:
    app = app or current_app
    return ServiceContext(session=db.session, policy=app.extensions["policy"])
