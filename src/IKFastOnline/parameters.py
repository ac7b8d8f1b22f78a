"""Job parameters accepted by the generator workflow.

The workflow runs in one of two modes: ``info`` lists the robot's links so a
user can pick the kinematic chain, and ``generate`` builds the solver for a
chosen base link, end-effector link, and IK type. :class:`TriggerParams`
validates these before anything is dispatched and renders the string-only
input map the remote job expects.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ParameterValidationError
from .settings import DEFAULT_IK_TYPE, IK_TYPES


class TriggerParams(BaseModel):
    """Validated parameters for one job dispatch."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Literal["info", "generate"]
    base_link: Optional[StrictInt] = Field(default=None, ge=0)
    ee_link: Optional[StrictInt] = Field(default=None, ge=0)
    ik_type: str = Field(default=DEFAULT_IK_TYPE)

    @field_validator("ik_type")
    @classmethod
    def validate_ik_type(cls, value: str) -> str:
        if value not in IK_TYPES:
            raise ValueError(f"ik_type must be one of {', '.join(IK_TYPES)}")
        return value

    @model_validator(mode="after")
    def check_generate_links(self) -> "TriggerParams":
        if self.mode != "generate":
            return self
        if self.base_link is None:
            raise ValueError("base_link is required in generate mode")
        if self.ee_link is None:
            raise ValueError("ee_link is required in generate mode")
        if self.base_link == self.ee_link:
            raise ValueError("base_link and ee_link must differ")
        return self

    @classmethod
    def build(cls, **values: Any) -> "TriggerParams":
        """Construct parameters, translating pydantic errors to :class:`ParameterValidationError`."""

        try:
            return cls(**values)
        except PydanticValidationError as exc:
            errors = exc.errors()
            first = errors[0] if errors else {}
            loc = first.get("loc") or ()
            field = str(loc[0]) if loc else None
            message = str(first.get("msg", exc))
            if field is None:
                for candidate in ("base_link", "ee_link"):
                    if candidate in message:
                        field = candidate
                        break
            raise ParameterValidationError(message, field=field) from exc

    @classmethod
    def info(cls) -> "TriggerParams":
        return cls(mode="info")

    @classmethod
    def generate(cls, base_link: int, ee_link: int, ik_type: str = DEFAULT_IK_TYPE) -> "TriggerParams":
        return cls.build(mode="generate", base_link=base_link, ee_link=ee_link, ik_type=ik_type)

    def to_inputs(self) -> Dict[str, str]:
        """Render the workflow ``inputs`` map; the provider only accepts strings."""

        inputs = {"mode": self.mode}
        if self.mode == "generate":
            inputs["base_link"] = str(self.base_link)
            inputs["ee_link"] = str(self.ee_link)
            inputs["iktype"] = self.ik_type
        return inputs


__all__ = ["TriggerParams"]
