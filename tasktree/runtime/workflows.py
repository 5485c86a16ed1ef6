"""
Workflow Profiles

Declarative per-step configuration for a multi-step workflow.

Design principles:
- Declarative: steps, instructions and scopes are data, not code
- Validatable: pydantic rejects malformed profiles at load time
- READ-ONLY at runtime: a profile is resolved once per job

A profile turns (workflow_step, input_payload) into a TaskSpec.
"""

import json
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from tasktree.core.exceptions import WorkflowNotFoundError, WorkflowValidationError
from tasktree.observability.logging import get_logger
from tasktree.runtime.spec import TaskSpecBuilder

logger = get_logger("tasktree.runtime.workflows")

GENERIC_STEP_INSTRUCTIONS = "Process the user's request for step: {step}"

_CLOSING_INSTRUCTIONS = (
    "Process the above user input according to the step instructions. "
    "Return structured JSON for this step."
)


class StepProfile(BaseModel):
    """One step of a workflow."""

    name: str
    instructions: str
    capabilities: list[str] = Field(default_factory=list)
    turn_limit: int | None = Field(default=None, ge=1)
    budget: float | None = Field(default=None, ge=0)


class WorkflowProfile(BaseModel):
    """Coordinator configuration plus the steps it may be asked to run."""

    name: str
    version: str = "1.0"
    description: str = ""

    system_instructions: str = ""
    capabilities: list[str] = Field(
        default_factory=list,
        description="Capabilities available to every step",
    )
    turn_limit: int = Field(default=50, ge=1)
    budget: float = Field(default=2.0, ge=0)
    session_ceiling: float | None = Field(default=None, ge=0)

    steps: list[StepProfile] = Field(default_factory=list)

    model_config = {"frozen": True}

    def get_step(self, name: str) -> StepProfile | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]

    def scope_for(self, step_name: str) -> frozenset[str]:
        step = self.get_step(step_name)
        extra = step.capabilities if step else []
        return frozenset(self.capabilities) | frozenset(extra)

    def build_spec(
        self,
        step_name: str,
        user_input: Any,
        context: dict[str, Any] | None = None,
    ) -> TaskSpecBuilder:
        """
        Start a TaskSpecBuilder for one step.

        Callers add session, resume handle and cancellation before build().
        """
        step = self.get_step(step_name)
        return (
            TaskSpecBuilder(build_step_instructions(step_name, user_input, context, profile=self))
            .with_scope(self.scope_for(step_name))
            .with_system_instructions(self.system_instructions or None)
            .with_turn_limit(step.turn_limit if step and step.turn_limit else self.turn_limit)
            .with_budget(step.budget if step and step.budget is not None else self.budget)
            .with_session_ceiling(self.session_ceiling)
            .with_metadata(workflow=self.name, workflow_step=step_name)
        )


def build_step_instructions(
    step: str,
    user_input: Any,
    context: dict[str, Any] | None = None,
    *,
    profile: WorkflowProfile | None = None,
) -> str:
    """
    Render the first-turn instructions for a workflow step.

    Operator input is serialized as JSON inside <user_input> delimiters
    so it can never be read as instructions.
    """
    step_profile = profile.get_step(step) if profile else None
    instructions = (
        step_profile.instructions.strip()
        if step_profile
        else GENERIC_STEP_INSTRUCTIONS.format(step=step)
    )

    header = [f"Current workflow step: {step}"]
    for key, value in (context or {}).items():
        header.append(f"{key}: {value}")

    payload = json.dumps(user_input if user_input is not None else {}, indent=2, default=str)
    payload = payload.replace("</user_input>", "<\\/user_input>")

    return (
        "\n".join(header)
        + f"\n\n{instructions}\n\n<user_input>\n{payload}\n</user_input>\n\n"
        + _CLOSING_INSTRUCTIONS
    )


class WorkflowRegistry:
    """
    Central registry of workflow profiles.

    Usage:
        registry = WorkflowRegistry.from_directory("profiles/")
        profile = registry.get("brand_wizard")
        spec = profile.build_spec("social-analysis", {"handle": "@x"}).build()
    """

    def __init__(self) -> None:
        self._profiles: dict[str, WorkflowProfile] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_directory(cls, directory: str | Path, recursive: bool = True) -> "WorkflowRegistry":
        """
        Create a registry by scanning a directory for YAML profiles.

        Invalid profiles are logged and skipped.

        Raises:
            WorkflowNotFoundError: If the directory doesn't exist
        """
        path = Path(directory)
        if not path.is_dir():
            raise WorkflowNotFoundError(f"Profile directory not found: {directory}")

        registry = cls()
        pattern = "**/*.y*ml" if recursive else "*.y*ml"
        for yaml_file in sorted(path.glob(pattern)):
            if not yaml_file.is_file():
                continue
            try:
                registry.load_file(yaml_file)
            except WorkflowValidationError as e:
                logger.warning("Skipping invalid workflow profile", file=str(yaml_file), reason=e.message)
        return registry

    @classmethod
    def from_file(cls, filepath: str | Path) -> "WorkflowRegistry":
        registry = cls()
        registry.load_file(filepath)
        return registry

    @classmethod
    def default(cls) -> "WorkflowRegistry":
        """Registry holding the profiles shipped with the package."""
        return cls.from_directory(Path(__file__).parent / "profiles")

    def load_file(self, filepath: str | Path) -> WorkflowProfile:
        """
        Load a workflow profile from a YAML file.

        Raises:
            WorkflowNotFoundError: If the file doesn't exist
            WorkflowValidationError: If the profile is invalid
        """
        path = Path(filepath)
        if not path.exists():
            raise WorkflowNotFoundError(f"File not found: {filepath}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise WorkflowValidationError(f"Invalid YAML in {filepath}", cause=e) from e

        if not isinstance(data, dict):
            raise WorkflowValidationError(
                f"Workflow profile must be a mapping: {filepath}",
                context={"source": str(filepath)},
            )
        return self.register_from_dict(data, source=str(filepath))

    def register_from_dict(self, data: dict[str, Any], source: str | None = None) -> WorkflowProfile:
        try:
            profile = WorkflowProfile(**data)
        except ValidationError as e:
            errors = [f"{err['loc']}: {err['msg']}" for err in e.errors()]
            name = data.get("name", source or "unknown")
            raise WorkflowValidationError(
                f"Invalid workflow profile '{name}'",
                context={"source": source, "errors": errors},
                cause=e,
            ) from e
        return self.register(profile)

    def register(self, profile: WorkflowProfile) -> WorkflowProfile:
        """Register a profile, replacing any with the same name."""
        with self._lock:
            if profile.name in self._profiles:
                logger.info("Replacing workflow profile", workflow=profile.name)
            self._profiles[profile.name] = profile
        return profile

    def get(self, name: str) -> WorkflowProfile:
        """
        Raises:
            WorkflowNotFoundError: If no profile has this name
        """
        with self._lock:
            profile = self._profiles.get(name)
        if profile is None:
            raise WorkflowNotFoundError(
                f"Workflow not found: {name}",
                context={"workflow": name, "available": self.list_workflows()},
            )
        return profile

    def list_workflows(self) -> list[str]:
        with self._lock:
            return sorted(self._profiles)

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)
