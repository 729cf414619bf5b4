"""
Ad and tracker blocking for adshield.

Provides network-level request classification, tracking parameter stripping
and in-page video ad suppression, driven by a curated filter config, a hosts
blocklist and EasyList.
"""

from .classifier import Category, ClassificationDecision, ResourceKind, UrlClassifier
from .engine import AdblockEngine
from .filter_lists import FilterListManager, SuppressionPayload, UpdateResult
from .suppression import AdPlaybackState, AdSuppressionController
from .tracking import strip_tracking_params

__all__ = [
    "AdPlaybackState",
    "AdSuppressionController",
    "AdblockEngine",
    "Category",
    "ClassificationDecision",
    "FilterListManager",
    "ResourceKind",
    "SuppressionPayload",
    "UpdateResult",
    "UrlClassifier",
    "strip_tracking_params",
]
