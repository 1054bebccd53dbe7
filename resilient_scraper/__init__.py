"""
Resilient comment extraction with page-state classification and
self-healing locators.
"""

from .models import (
    ChangeResult,
    DiscoveryResult,
    ExtractedComment,
    ExtractionResult,
    LocatorEntry,
    LocatorVersion,
    PageSnapshot,
    PageState,
    PageStateResult,
    SelectorHealthSnapshot,
    StructureFingerprint,
    content_hash,
)
from .config import Settings
from .core import ExtractionEngine
from .classifier import PageStateClassifier, categorize_page
from .registry import SelectorRegistry, RediscoveryQueue
from .fingerprint import StructureFingerprinter
from .discovery import LocatorDiscovery, is_too_generic
from .pipeline import CommentExtractionPipeline, ExtractionSession
from .store import CachedRegistryStore, MemoryRegistryStore, SQLRegistryStore
from .llm import LLMClient
from .browser import BrowserSession, PlaywrightPageHandle

__version__ = "0.3.0"

__all__ = [
    "ChangeResult",
    "DiscoveryResult",
    "ExtractedComment",
    "ExtractionResult",
    "LocatorEntry",
    "LocatorVersion",
    "PageSnapshot",
    "PageState",
    "PageStateResult",
    "SelectorHealthSnapshot",
    "StructureFingerprint",
    "content_hash",
    "Settings",
    "ExtractionEngine",
    "PageStateClassifier",
    "categorize_page",
    "SelectorRegistry",
    "RediscoveryQueue",
    "StructureFingerprinter",
    "LocatorDiscovery",
    "is_too_generic",
    "CommentExtractionPipeline",
    "ExtractionSession",
    "CachedRegistryStore",
    "MemoryRegistryStore",
    "SQLRegistryStore",
    "LLMClient",
    "BrowserSession",
    "PlaywrightPageHandle",
]
