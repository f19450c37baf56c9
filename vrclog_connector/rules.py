from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union


logger = logging.getLogger("vrclog_connector.rules")

WEB_REQUEST = "WebRequest"
SEND_OVERLAY = "SendOverlay"
OUTPUT_TEXT = "OutputText"

SINK_TYPES = (WEB_REQUEST, SEND_OVERLAY, OUTPUT_TEXT)

# Names written by the desktop UI's settings editor
SINK_ALIASES = {
    "web request": WEB_REQUEST,
    "webrequest": WEB_REQUEST,
    "xs": SEND_OVERLAY,
    "sendoverlay": SEND_OVERLAY,
    "log": OUTPUT_TEXT,
    "outputtext": OUTPUT_TEXT,
}


def normalize_sink_type(value: Optional[str]) -> str:
    """Map a persisted sink name onto one of SINK_TYPES.

    Unknown names are returned unchanged so the dispatcher can report them.
    """
    if not value:
        return OUTPUT_TEXT
    return SINK_ALIASES.get(value.strip().lower(), value)


@dataclass
class InvalidRulePattern:
    rule_id: str
    pattern: str
    error: str

    def __str__(self) -> str:
        return f"rule {self.rule_id}: invalid pattern {self.pattern!r} ({self.error})"


@dataclass
class Rule:
    id: str
    title: str = ""
    regexp: str = ""
    details: str = ""
    type: str = OUTPUT_TEXT
    url: str = ""
    target: str = ""
    _regex: Optional[re.Pattern] = field(default=None, init=False, repr=False, compare=False)
    problem: Optional[InvalidRulePattern] = field(default=None, init=False, repr=False, compare=False)

    def compile(self) -> Optional[InvalidRulePattern]:
        self._regex = None
        self.problem = None
        if not self.regexp:
            return None
        if not isinstance(self.regexp, str):
            self.problem = InvalidRulePattern(self.id, repr(self.regexp), "pattern must be a string")
            return self.problem
        try:
            self._regex = re.compile(self.regexp)
        except re.error as e:
            self.problem = InvalidRulePattern(self.id, self.regexp, str(e))
        return self.problem

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "details": self.details,
            "target": self.target,
            "type": self.type,
            "url": self.url,
            "regexp": self.regexp,
        }

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "Rule":
        # regexp is kept as given so compile() can report a non-string pattern
        return cls(
            id=_text(item.get("id")),
            title=_text(item.get("title")),
            regexp=item.get("regexp") or "",
            details=_text(item.get("details")),
            type=normalize_sink_type(_text(item.get("type"))),
            url=_text(item.get("url")),
            target=_text(item.get("target")),
        )


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


@dataclass
class Match:
    rule: Rule
    value: str
    line: str
    ts: float


def load_rules(items: Iterable[Union[Rule, Dict[str, Any]]]) -> List[Rule]:
    """Build the active rule sequence from persisted settings entries.

    Ids must be unique; a later entry reusing an id is dropped. Every rule
    comes back compiled. A broken pattern is logged once, left on
    `Rule.problem`, and never matches.
    """
    rules: List[Rule] = []
    seen = set()
    for n, item in enumerate(items or []):
        if isinstance(item, Rule):
            r = item
        elif isinstance(item, dict):
            r = Rule.from_dict(item)
        else:
            logger.warning(f"settings entry #{n} is not a rule object, ignored")
            continue
        if not r.id:
            r.id = f"rule-{n}"
        if r.id in seen:
            logger.warning(f"rule {r.id}: duplicate id, entry #{n} ignored")
            continue
        seen.add(r.id)
        if r._regex is None and r.problem is None and r.compile() is not None:
            logger.warning(str(r.problem))
        rules.append(r)
    return rules


def builtin_rules() -> List[Rule]:
    """Fixed recognizers for user login and world join lines."""
    return load_rules([
        Rule(
            id="builtin.user_authenticated",
            title="User Authenticated",
            regexp=r"User Authenticated: [^(]*\((?P<value>[^)]*)\)",
            type=OUTPUT_TEXT,
        ),
        Rule(
            id="builtin.joining_world",
            title="Joining World",
            regexp=r"\[Behaviour\] Joining (?P<value>wrld_[^:]*)",
            type=OUTPUT_TEXT,
        ),
    ])


def _matched_value(m: re.Match) -> str:
    if "value" in m.re.groupindex and m.group("value") is not None:
        return m.group("value")
    return m.group(0)


def match_line(line: str, rules: Iterable[Rule], ts: Optional[float] = None) -> List[Match]:
    hits: List[Match] = []
    now = time.time() if ts is None else ts
    for r in rules:
        if r._regex is None:
            continue
        m = r._regex.search(line)
        if m is None:
            continue
        value = _matched_value(m)
        # an empty match carries nothing worth dispatching
        if not value:
            continue
        hits.append(Match(rule=r, value=value, line=line, ts=now))
    return hits
