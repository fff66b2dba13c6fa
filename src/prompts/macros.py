"""Request-scoped ``{{setglobalvar}}`` / ``{{getglobalvar}}`` macros."""

import re

from src.logging.audit import get_logger

logger = get_logger("prompts")

SET_MACRO = re.compile(r"\{\{setglobalvar::([^:]+)::([\s\S]*?)\}\}")
GET_MACRO = re.compile(r"\{\{getglobalvar::([^}]+)\}\}")


class MacroScope:
    """Variables that live for exactly one assembly pass.

    ``process`` handles every set in a text before any get, in a single
    pass: a substituted value is never scanned again for macros.
    """

    def __init__(self):
        self._variables: dict[str, str] = {}

    def _set(self, match: re.Match) -> str:
        name = match.group(1).strip()
        self._variables[name] = match.group(2)
        logger.debug("Macro variable set", extra={"audit_data": {"variable": name}})
        return ""

    def _get(self, match: re.Match) -> str:
        name = match.group(1).strip()
        if name in self._variables:
            return self._variables[name]
        logger.warning("Macro variable not set", extra={"audit_data": {"variable": name}})
        return ""

    def process(self, text: str) -> str:
        text = SET_MACRO.sub(self._set, text)
        return GET_MACRO.sub(self._get, text)

    def get(self, name: str) -> str | None:
        return self._variables.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._variables
