"""
Image assets: references, the bucket-facing store, the quota ledger and
the lifecycle that ties them to record mutations.
"""

from promptstudio.assets.refs import (
    MANAGED_PREFIX,
    AssetRef,
    Empty,
    External,
    Managed,
    InlineImage,
    classify,
    decode_inline,
    parse_ref,
)
from promptstudio.assets.store import AssetStore
from promptstudio.assets.quota import QuotaLedger, QuotaPolicy
from promptstudio.assets.lifecycle import AssetLifecycle, AssetMutation

__all__ = [
    "MANAGED_PREFIX",
    "AssetRef",
    "Empty",
    "External",
    "Managed",
    "InlineImage",
    "classify",
    "decode_inline",
    "parse_ref",
    "AssetStore",
    "QuotaLedger",
    "QuotaPolicy",
    "AssetLifecycle",
    "AssetMutation",
]
