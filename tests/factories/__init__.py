"""Factory Boy helpers building the sample entities.

Entities are plain dataclasses persisted through repositories inside a unit of
work, so factories only ``build()`` them; persistence is the test's job.
"""

from __future__ import annotations

import factory


class BaseFactory(factory.Factory):
    """Base class for entity factories (build strategy only)."""

    class Meta:
        abstract = True
        strategy = factory.BUILD_STRATEGY
