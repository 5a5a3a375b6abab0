from __future__ import annotations

from tasksync.config import load_config
from tasksync.session import Session

from .app import create_app

_session = Session.from_config(load_config())
app = create_app(_session, manage_lifecycle=True)
