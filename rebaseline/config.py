"""Configuration for rebaseline with validation."""

from enum import Enum
from pathlib import Path
from typing import Optional, Dict
from pydantic import BaseModel, Field, field_validator, ConfigDict
import structlog
import toml

log = structlog.get_logger()


class MatcherKind(str, Enum):
    """How a matcher's recorded result is written back."""

    INLINE = "inline"      # Expected value lives in the source as a literal argument
    ARTIFACT = "artifact"  # Expected value lives in a reference file next to the test


DEFAULT_MATCHERS: Dict[str, MatcherKind] = {
    "toBe": MatcherKind.INLINE,
    "toEqual": MatcherKind.INLINE,
    "toStrictEqual": MatcherKind.INLINE,
    "toMatchSnapshot": MatcherKind.ARTIFACT,
    "toHaveScreenshot": MatcherKind.ARTIFACT,
}


class LiteralPolicy(BaseModel):
    """Which argument shapes count as safely rewritable literals.

    Primitive literals are always rewritable; the flags below widen the set.
    Anything that references a value identifier is never rewritable.
    """

    negated_numbers: bool = True
    templates: bool = True
    arrays: bool = True
    objects: bool = True


class RebaselineConfig(BaseModel):
    """Main configuration for rebaseline."""

    model_config = ConfigDict(validate_assignment=True)

    request_file: Path = Path("rebaseline.json")
    matchers: Dict[str, MatcherKind] = Field(default_factory=lambda: dict(DEFAULT_MATCHERS))
    literal_policy: LiteralPolicy = Field(default_factory=LiteralPolicy)

    # Logging
    log_level: str = Field(default="WARNING", pattern="^(DEBUG|INFO|WARNING|ERROR)$")
    log_file: Optional[Path] = None
    json_logs: bool = False

    @field_validator("matchers")
    @classmethod
    def matchers_not_empty(cls, v):
        if not v:
            raise ValueError("At least one matcher must be configured")
        for name in v:
            if not name.isidentifier():
                raise ValueError(f"Matcher name is not an identifier: {name!r}")
        return v

    @classmethod
    def load(cls, path: Optional[str] = None) -> "RebaselineConfig":
        """Load configuration from a TOML file.

        Search order if path not provided:
        1. ./rebaseline.toml (project-specific)
        2. ~/.rebaseline/config.toml (user default)

        Args:
            path: Optional explicit config file path

        Returns:
            RebaselineConfig instance
        """
        if path is None:
            candidates = [
                Path("rebaseline.toml"),
                Path("~/.rebaseline/config.toml").expanduser(),
            ]
            for candidate in candidates:
                if candidate.exists():
                    path = str(candidate)
                    log.info("config_found", path=path)
                    break

        if path and Path(path).exists():
            try:
                data = toml.load(path)
                log.info("config_loaded", path=path)
                return cls(**data)
            except Exception as e:
                log.error("config_load_failed", path=path, error=str(e))
                return cls()

        log.info("config_using_defaults")
        return cls()

    def save(self, path: str):
        """Save configuration to a TOML file."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            toml.dump(self.model_dump(mode="json", exclude_none=True), f)
        log.info("config_saved", path=path)
