"""Stock step templates offered when building a workflow."""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

from .contracts import Step, StepKind
from .errors import NotFoundError


class StepTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    kind: StepKind
    title: str
    description: str
    configuration: Dict[str, Any] = Field(default_factory=dict)

    def build(self, **overrides: Any) -> Step:
        """Instantiate a fresh step from this template.

        ``configuration`` in ``overrides`` is merged over the template's.
        """
        configuration = {**self.configuration, **overrides.pop("configuration", {})}
        data: Dict[str, Any] = {
            "kind": self.kind,
            "title": self.title,
            "description": self.description,
            "configuration": configuration,
        }
        data.update(overrides)
        return Step.model_validate(data)


STEP_TEMPLATES: Dict[str, StepTemplate] = {
    t.key: t
    for t in (
        StepTemplate(
            key="email_received",
            kind=StepKind.TRIGGER,
            title="Email Received",
            description="Triggers when a new email is received",
            configuration={"event": "email.received"},
        ),
        StepTemplate(
            key="form_submission",
            kind=StepKind.TRIGGER,
            title="Form Submission",
            description="Triggers when a form is submitted",
            configuration={"event": "form.submitted"},
        ),
        StepTemplate(
            key="send_email",
            kind=StepKind.ACTION,
            title="Send Email",
            description="Sends an automated email",
            configuration={"operation": "send_email"},
        ),
        StepTemplate(
            key="ai_analysis",
            kind=StepKind.ACTION,
            title="AI Analysis",
            description="Analyzes data using AI",
            configuration={"operation": "ai_analysis"},
        ),
        StepTemplate(
            key="if_then",
            kind=StepKind.CONDITION,
            title="If/Then",
            description="Conditional logic based on data",
            configuration={"expression": ""},
        ),
    )
}


def list_templates() -> List[StepTemplate]:
    return list(STEP_TEMPLATES.values())


def get_template(key: str) -> StepTemplate:
    try:
        return STEP_TEMPLATES[key]
    except KeyError:
        raise NotFoundError(f"Unknown step template: {key}") from None


def build_step(key: str, **overrides: Any) -> Step:
    """Shortcut for ``get_template(key).build(**overrides)``."""
    return get_template(key).build(**overrides)
