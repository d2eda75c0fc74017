"""
Agent identifiers: ``<name>-<8 lowercase hex>``.
"""
import re
import secrets

_SUFFIX_RE = re.compile(r"^(?P<name>.+)-[0-9a-f]{8}$")


def generate_agent_id(name: str) -> str:
    """Return a new id for `name`; 32 bits of CSPRNG entropy per call."""
    return f"{name}-{secrets.token_hex(4)}"


def short_name(agent_id: str) -> str:
    """
    Strip the generated suffix: ``test-agent-1-aaaa1111`` -> ``test-agent-1``.
    Ids that do not carry a generated suffix are returned unchanged.
    """
    m = _SUFFIX_RE.match(agent_id or "")
    return m.group("name") if m else agent_id
