import os

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tarsier.reasoning import DEFAULT_FLUSH_CHARS
from tarsier.sentinel import SentinelTokens

ENV_PREFIX = "TARSIER_"


class ReconstructorConfig(BaseModel):
    """Settings for one :class:`~tarsier.reconstructor.StreamReconstructor`.

    Example:
        config = ReconstructorConfig(reasoning_flush_chars=2000)
        config = ReconstructorConfig.from_env()
    """

    model_config = ConfigDict(frozen=True)

    reasoning_flush_chars: int = Field(DEFAULT_FLUSH_CHARS, gt=0)
    think_start_tag: str = Field("<think>", min_length=1)
    think_end_tag: str = Field("</think>", min_length=1)
    sentinels: SentinelTokens = Field(default_factory=SentinelTokens)
    parse_sentinel_sections: bool = True
    parse_think_tags: bool = True
    # Emitted once before the first tool call of a stream that already
    # showed text.  ``None`` disables it.
    tool_call_separator: str | None = " "

    @model_validator(mode="after")
    def _distinct_tags(self) -> "ReconstructorConfig":
        if self.think_start_tag == self.think_end_tag:
            raise ValueError("think start and end tags must differ")
        return self

    @classmethod
    def from_env(cls, **overrides) -> "ReconstructorConfig":
        """Build a config from ``TARSIER_*`` environment variables.

        Explicit keyword overrides win over the environment.
        """
        values = {}
        for name in (
            "reasoning_flush_chars",
            "think_start_tag",
            "think_end_tag",
            "tool_call_separator",
        ):
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        return cls(**values)
