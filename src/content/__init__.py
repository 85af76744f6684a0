"""
Content capabilities for Post Orchestrator.

Generation and publishing are pluggable: the engine depends only on the
abstract capabilities re-exported here.

Usage:
    from src.content import TemplateContentGenerator, HttpPublisher

    generator = TemplateContentGenerator()
    publisher = HttpPublisher(base_url="http://gateway:9100")
"""
from .generator import (
    GenerationCapability,
    TemplateContentGenerator,
    PlatformConstraints,
    PLATFORM_CONSTRAINTS,
)
from .publisher import (
    PublishingCapability,
    HttpPublisher,
)

__all__ = [
    # Generator
    "GenerationCapability",
    "TemplateContentGenerator",
    "PlatformConstraints",
    "PLATFORM_CONSTRAINTS",
    # Publisher
    "PublishingCapability",
    "HttpPublisher",
]
