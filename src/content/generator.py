"""
Content generation capability.

The engine only sees ``GenerationCapability.generate(config) -> Content``.
``TemplateContentGenerator`` is the built-in provider: it renders a
platform-specific Jinja2 template from the high-level description (theme,
keywords, audience, style) and respects platform constraints.

Usage:
    generator = TemplateContentGenerator()
    content = await generator.generate(
        GenerationConfig(theme="美食", keywords=["火锅", "成都"])
    )
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

from ..core.errors import CapabilityError
from ..tasks.capabilities import GenerationCapability
from ..tasks.models import Content, ContentStyle, GenerationConfig

logger = logging.getLogger(__name__)


@dataclass
class PlatformConstraints:
    """Constraints for a specific platform."""
    max_title_length: int
    max_length: int
    max_tags: int
    tag_prefix: str = "#"


PLATFORM_CONSTRAINTS: dict[str, PlatformConstraints] = {
    "xiaohongshu": PlatformConstraints(max_title_length=20, max_length=1000, max_tags=10),
    "weibo": PlatformConstraints(max_title_length=30, max_length=2000, max_tags=5),
    "douyin": PlatformConstraints(max_title_length=30, max_length=500, max_tags=5),
}

DEFAULT_CONSTRAINTS = PlatformConstraints(max_title_length=60, max_length=3000, max_tags=8)

STYLE_OPENERS: dict[ContentStyle, str] = {
    ContentStyle.FORMAL: "An overview of",
    ContentStyle.CASUAL: "Let's talk about",
    ContentStyle.PROFESSIONAL: "Key insights on",
    ContentStyle.CREATIVE: "Imagine a day full of",
}


class TemplateContentGenerator(GenerationCapability):
    """
    Generates posts from Jinja2 templates.

    Templates live in ``src/content/templates`` as ``<platform>.jinja2``;
    ``default.jinja2`` covers platforms without their own template.
    """

    def __init__(self, template_dir: Optional[Path] = None):
        """
        Initialize the content generator.

        Args:
            template_dir: Path to Jinja2 templates. Defaults to src/content/templates.
        """
        if template_dir is None:
            template_dir = Path(__file__).parent / "templates"

        self.template_dir = template_dir

        # Initialize Jinja2 environment
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )

        # Register custom filters
        self.env.filters["truncate_smart"] = self._truncate_smart
        self.env.filters["format_hashtags"] = self._format_hashtags

    @staticmethod
    def _truncate_smart(text: str, length: int, suffix: str = "...") -> str:
        """Truncate text at word boundary."""
        if len(text) <= length:
            return text

        # Find last space before length limit
        truncated = text[: length - len(suffix)]
        last_space = truncated.rfind(" ")

        if last_space > length // 2:
            truncated = truncated[:last_space]

        return truncated.rstrip() + suffix

    @staticmethod
    def _format_hashtags(tags: list[str], prefix: str = "#") -> str:
        """Format tags as hashtags."""
        return " ".join(f"{prefix}{tag.replace(' ', '')}" for tag in tags)

    @staticmethod
    def constraints_for(platform: str) -> PlatformConstraints:
        return PLATFORM_CONSTRAINTS.get(platform.lower(), DEFAULT_CONSTRAINTS)

    def _get_template(self, platform: str):
        try:
            return self.env.get_template(f"{platform.lower()}.jinja2")
        except TemplateNotFound:
            logger.debug(f"No template for {platform}, using default")
            return self.env.get_template("default.jinja2")

    def build_tags(self, config: GenerationConfig) -> list[str]:
        """Theme first, then keywords, without duplicates."""
        constraints = self.constraints_for(config.platform)
        tags: list[str] = []
        for tag in [config.theme, *config.keywords]:
            tag = tag.strip()
            if tag and tag not in tags:
                tags.append(tag)
        return tags[: constraints.max_tags]

    async def generate(self, config: GenerationConfig) -> Content:
        """
        Render a post for the config's platform.

        Args:
            config: High-level description of the post

        Returns:
            Content with title, text and tags (not yet stored)

        Raises:
            CapabilityError: If the config is empty or rendering fails
        """
        if config.is_empty:
            raise CapabilityError("Nothing to generate: theme and keywords are empty",
                                  retryable=False)

        constraints = self.constraints_for(config.platform)
        subject = config.theme.strip() or config.keywords[0]
        tags = self.build_tags(config)

        context = {
            "theme": subject,
            "keywords": [k for k in config.keywords if k.strip()],
            "target_audience": config.target_audience,
            "style": config.style.value,
            "opener": STYLE_OPENERS[config.style],
            "word_count": config.word_count,
            "tags": tags,
            "tag_prefix": constraints.tag_prefix,
        }

        try:
            rendered = self._get_template(config.platform).render(**context)
        except Exception as e:
            raise CapabilityError(f"Template rendering failed: {e}") from e

        max_length = min(constraints.max_length, max(config.word_count, 1) * 4)
        text = self._truncate_smart(rendered.strip(), max_length)
        title = self._truncate_smart(subject, constraints.max_title_length)

        logger.info(f"Generated {config.platform} post '{title}' ({len(text)} chars)")
        return Content(title=title, text=text, tags=tags)
