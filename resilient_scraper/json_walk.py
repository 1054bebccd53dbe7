"""
Comment discovery inside arbitrary JSON (intercepted API responses and
embedded script payloads).

The walk is an explicit visitor with a hard depth bound; fields are read
through ordered lists of named rules so new payload shapes only need a new
path, not new code.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .config import JSON_MAX_DEPTH
from .models import utcnow

logger = logging.getLogger(__name__)

# Subtrees that describe the viewer, the request, an account or the post caption.
SKIP_KEYS = {"viewer", "extensions", "me", "user", "owner", "caption", "edge_media_to_caption"}

# Keys whose presence marks a post/media object rather than a comment.
MEDIA_KEYS = {"is_video", "media_type", "carousel_media", "image_versions2", "display_url"}

UI_ID_MARKERS = ("button", "menu", "nav", "header", "footer", "toolbar", "placeholder", "tooltip")

UI_TEXT_BLACKLIST = {
    "reply", "responder",
    "like", "curtir",
    "view replies", "ver respostas",
    "hide replies", "ocultar respostas",
    "see translation", "ver tradução",
    "more", "mais",
    "follow", "seguir",
    "share", "compartilhar",
    "send", "enviar",
    "log in", "entrar",
    "sign up", "cadastre-se",
    "add a comment…", "add a comment...",
    "adicione um comentário...", "adicione um comentário…",
}

UI_TEXT_PATTERNS = (
    re.compile(r"^(view|ver) (all|todos|todas)\b"),
    re.compile(r"^(view|ver) \d+ (more )?(replies|respostas)"),
    re.compile(r"^\d+\s?[smhdw]$"),
    re.compile(r"^\d+\s?(likes?|curtidas?)$"),
)


@dataclass(frozen=True)
class FieldRule:
    """A named field and the key paths tried, in order, to read it."""
    name: str
    paths: Tuple[Tuple[str, ...], ...]

    def read(self, obj: Dict[str, Any]) -> Any:
        for path in self.paths:
            value: Any = obj
            for key in path:
                if not isinstance(value, dict) or key not in value:
                    value = None
                    break
                value = value[key]
            if value is not None and value != "":
                return value
        return None


TEXT_RULE = FieldRule("text", (("text",), ("body",), ("content",)))
ID_RULE = FieldRule("comment_id", (("pk",), ("id",), ("comment_id",)))
USERNAME_RULE = FieldRule(
    "username",
    (("user", "username"), ("owner", "username"), ("from", "username"), ("username",)),
)
TIMESTAMP_RULE = FieldRule(
    "created_at",
    (("created_at",), ("created_time",), ("timestamp",), ("taken_at",)),
)
AUTHOR_ID_RULE = FieldRule(
    "author_id",
    (("user", "pk"), ("user", "id"), ("owner", "id"), ("owner", "pk"), ("user_id",)),
)
LIKES_RULE = FieldRule(
    "like_count",
    (("comment_like_count",), ("like_count",), ("edge_liked_by", "count")),
)
PARENT_RULE = FieldRule(
    "parent_comment_id",
    (("parent_comment_id",), ("parent_id",), ("replied_to_comment_id",)),
)

REPLY_CONTAINERS: Tuple[Tuple[str, ...], ...] = (
    ("edge_threaded_comments", "edges"),
    ("replies", "edges"),
    ("preview_child_comments",),
    ("child_comments",),
)


def parse_timestamp(value: Any) -> datetime:
    """Epoch seconds/milliseconds or ISO-8601; anything else means now."""
    if isinstance(value, bool):
        return utcnow()
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        value = int(value.strip())
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return utcnow()
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return utcnow()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return utcnow()


def parse_like_count(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def is_ui_chrome(comment_id: Any, text: str) -> bool:
    if isinstance(comment_id, str):
        lowered_id = comment_id.lower()
        if any(marker in lowered_id for marker in UI_ID_MARKERS):
            return True
    lowered = text.strip().lower()
    if lowered in UI_TEXT_BLACKLIST:
        return True
    return any(p.match(lowered) for p in UI_TEXT_PATTERNS)


def is_comment_object(obj: Dict[str, Any]) -> bool:
    text = TEXT_RULE.read(obj)
    if not isinstance(text, str) or not text.strip():
        return False
    if MEDIA_KEYS.intersection(obj):
        return False
    comment_id = ID_RULE.read(obj)
    if comment_id is None and USERNAME_RULE.read(obj) is None:
        return False
    return not is_ui_chrome(comment_id, text)


class CommentJsonVisitor:
    """Depth-bounded walk collecting comment-like objects into ``found``."""

    def __init__(self, max_depth: int = JSON_MAX_DEPTH):
        self.max_depth = max_depth
        self.found: List[Dict[str, Any]] = []

    def visit(self, value: Any, depth: int = 0, parent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if depth > self.max_depth:
            return self.found

        if isinstance(value, list):
            for item in value:
                self.visit(item, depth + 1, parent_id)
        elif isinstance(value, dict):
            if is_comment_object(value):
                self._visit_comment(value, depth, parent_id)
            else:
                for key, child in value.items():
                    if key in SKIP_KEYS:
                        continue
                    self.visit(child, depth + 1, parent_id)
        return self.found

    def _visit_comment(self, obj: Dict[str, Any], depth: int, parent_id: Optional[str]):
        record = extract_fields(obj)
        if parent_id and not record["parent_comment_id"]:
            record["parent_comment_id"] = parent_id
        self.found.append(record)

        for path in REPLY_CONTAINERS:
            container = FieldRule("replies", (path,)).read(obj)
            if not container:
                continue
            self.visit(container, depth + 1, record["comment_id"] or parent_id)


def extract_fields(obj: Dict[str, Any]) -> Dict[str, Any]:
    comment_id = ID_RULE.read(obj)
    author_id = AUTHOR_ID_RULE.read(obj)
    parent = PARENT_RULE.read(obj)
    username = USERNAME_RULE.read(obj)
    return {
        "comment_id": str(comment_id) if comment_id is not None else None,
        "username": str(username) if username is not None else "",
        "text": TEXT_RULE.read(obj).strip(),
        "created_at": parse_timestamp(TIMESTAMP_RULE.read(obj)),
        "author_id": str(author_id) if author_id is not None else None,
        "like_count": parse_like_count(LIKES_RULE.read(obj)),
        "parent_comment_id": str(parent) if parent is not None else None,
    }


def find_comments(payload: Any, max_depth: int = JSON_MAX_DEPTH) -> List[Dict[str, Any]]:
    """All comment-like records reachable in ``payload``, replies included."""
    found = CommentJsonVisitor(max_depth=max_depth).visit(payload)
    logger.debug("JSON walk found %d comment-like objects", len(found))
    return found
