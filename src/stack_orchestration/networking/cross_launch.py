"""
Launch context handed between the installer and the monitoring console.

The context travels as URL query parameters, so encode() followed by
decode() must return an equal context.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Dict, Optional, Union
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field

from stack_orchestration.core.errors import ErrorKind, Invalid, NotFound, Ok, Problem

logger = logging.getLogger(__name__)

# Larger state snapshots are dropped rather than producing oversized URLs.
MAX_STATE_PARAM_LENGTH = 2000


class LaunchAction(str, Enum):
    ADD = "add"
    MODIFY = "modify"
    REMOVE = "remove"
    VIEW = "view"


class CrossLaunchContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    action: LaunchAction
    profile: Optional[str] = None
    service: Optional[str] = None
    return_url: Optional[str] = Field(default=None, alias="returnUrl")
    current_state: Optional[Dict[str, Any]] = Field(default=None, alias="currentState")

    def to_params(self) -> Dict[str, str]:
        params = {"action": self.action.value}
        if self.profile:
            params["profile"] = self.profile
        if self.service:
            params["service"] = self.service
        if self.return_url:
            params["returnUrl"] = self.return_url
        if self.current_state is not None:
            state_json = json.dumps(self.current_state, separators=(",", ":"), sort_keys=True)
            if len(state_json) < MAX_STATE_PARAM_LENGTH:
                params["currentState"] = state_json
            else:
                logger.warning("Current state too large for URL parameter, skipping")
        return params

    def encode(self) -> str:
        """Query string without the leading '?'."""
        return urlencode(self.to_params())


def decode_context(url_or_query: str) -> Union[Ok[CrossLaunchContext], NotFound, Invalid]:
    """
    Parse a launch context from a full URL or a bare query string.

    Returns NotFound when no action parameter is present.
    """
    query = urlsplit(url_or_query).query if "://" in url_or_query else url_or_query.lstrip("?")
    params = {k: v[0] for k, v in parse_qs(query, keep_blank_values=False).items()}

    if "action" not in params:
        return NotFound("No launch context in URL")

    problems = []
    try:
        action = LaunchAction(params["action"])
    except ValueError:
        action = None
        problems.append(Problem(
            ErrorKind.VALIDATION, "invalid_action", f"Unknown launch action: {params['action']}",
            {"allowed": [a.value for a in LaunchAction]},
        ))

    current_state = None
    if "currentState" in params:
        try:
            current_state = json.loads(params["currentState"])
        except json.JSONDecodeError as e:
            problems.append(Problem(ErrorKind.VALIDATION, "invalid_state", f"currentState is not valid JSON: {e}"))

    if problems:
        return Invalid(problems)

    return Ok(CrossLaunchContext(
        action=action,
        profile=params.get("profile"),
        service=params.get("service"),
        return_url=params.get("returnUrl"),
        current_state=current_state,
    ))


def strip_context(url: str) -> str:
    """Drop the query string once a context has been consumed."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", parts.fragment))


class CrossLaunchNavigator:
    """Builds URLs for moving between the installer and the dashboard."""

    def __init__(self, wizard_url: str = "http://localhost:3000", dashboard_url: str = "http://localhost:8080"):
        self.wizard_url = wizard_url.rstrip("/")
        self.dashboard_url = dashboard_url.rstrip("/")

    def wizard_url_for(self, context: Optional[CrossLaunchContext] = None) -> str:
        if context is None:
            return self.wizard_url
        return f"{self.wizard_url}/?{context.encode()}"

    def _profile_url(self, action: LaunchAction, profile: Optional[str]) -> str:
        return self.wizard_url_for(CrossLaunchContext(action=action, profile=profile, return_url=self.dashboard_url))

    def add_profile_url(self, profile: str) -> str:
        return self._profile_url(LaunchAction.ADD, profile)

    def modify_profile_url(self, profile: str) -> str:
        return self._profile_url(LaunchAction.MODIFY, profile)

    def remove_profile_url(self, profile: str) -> str:
        return self._profile_url(LaunchAction.REMOVE, profile)

    def reconfigure_url(self) -> str:
        return self._profile_url(LaunchAction.MODIFY, None)
