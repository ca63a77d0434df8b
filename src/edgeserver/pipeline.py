"""
=============================================================================
RESOLUTION PIPELINE
=============================================================================

Decides what answers a request. The stages run in a fixed order and the
first one that handles the request wins:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   request                                                            │
    │      │                                                               │
    │      ▼                                                               │
    │   ┌──────────────┐  HANDLED   301 to https://host/path              │
    │   │ redirect     │──────────►                                       │
    │   └──────┬───────┘                                                   │
    │          │ NOT_APPLICABLE                                            │
    │          ▼                                                           │
    │   ┌──────────────┐  HANDLED   file from the static root             │
    │   │ static       │──────────►                                       │
    │   └──────┬───────┘                                                   │
    │          │ NOT_APPLICABLE (or ERROR, logged)                         │
    │          ▼                                                           │
    │   ┌──────────────┐  HANDLED   upstream response, relayed as-is      │
    │   │ proxy        │──────────►                                       │
    │   └──────┬───────┘                                                   │
    │          │ ERROR                                                     │
    │          ▼                                                           │
    │     exception re-raised (ProxyError → 502 in the server loop)       │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
STAGE RESULTS
=============================================================================

Every stage returns a StageResult with one of three outcomes:

    HANDLED         carries the response; the chain stops
    NOT_APPLICABLE  this stage has nothing to say; try the next one
    ERROR           the stage failed; carries the exception

ERROR from any stage but the last is logged and treated as NOT_APPLICABLE.
ERROR from the last stage has nowhere to fall through to, so its exception
is re-raised to the caller. NOT_APPLICABLE from the last stage is a
programming error (the proxy always answers or fails) and raises
RuntimeError.

A stage is any object with a `name` and an async `resolve(request)`
returning a StageResult.

=============================================================================
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Protocol
import logging

from .http.request import HTTPRequest
from .http.response import HTTPResponse


logger = logging.getLogger(__name__)


class Outcome(Enum):
    HANDLED = "handled"
    NOT_APPLICABLE = "not_applicable"
    ERROR = "error"


@dataclass(frozen=True)
class StageResult:
    """What one stage made of a request."""

    outcome: Outcome
    response: Optional[HTTPResponse] = None
    exception: Optional[BaseException] = None

    @classmethod
    def handled(cls, response: HTTPResponse) -> "StageResult":
        return cls(Outcome.HANDLED, response=response)

    @classmethod
    def not_applicable(cls) -> "StageResult":
        return cls(Outcome.NOT_APPLICABLE)

    @classmethod
    def error(cls, exception: BaseException) -> "StageResult":
        return cls(Outcome.ERROR, exception=exception)

    @property
    def is_handled(self) -> bool:
        return self.outcome is Outcome.HANDLED


class Stage(Protocol):
    name: str

    async def resolve(self, request: HTTPRequest) -> StageResult:
        ...


class ResolutionPipeline:
    """
    Runs stages in order until one handles the request.

    Usage:
        pipeline = ResolutionPipeline([guard, static, proxy])
        response = await pipeline.resolve(request)
    """

    def __init__(self, stages: Sequence[Stage]):
        if not stages:
            raise ValueError("ResolutionPipeline needs at least one stage")
        self.stages = list(stages)

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    async def resolve(self, request: HTTPRequest) -> HTTPResponse:
        """
        Produce the response for a request.

        Raises:
            The terminal stage's exception when it fails.
        """
        last = len(self.stages) - 1

        for index, stage in enumerate(self.stages):
            result = await stage.resolve(request)

            if result.is_handled:
                response = result.response
                if not response.source:
                    response.source = stage.name
                return response

            if result.outcome is Outcome.ERROR:
                if index == last:
                    raise result.exception
                logger.warning(
                    f"Stage {stage.name} failed for {request.path}, "
                    f"falling through: {result.exception!r}"
                )
                continue

            logger.debug(f"Stage {stage.name} not applicable for {request.path}")

        raise RuntimeError(f"No stage handled {request.method} {request.path}")
