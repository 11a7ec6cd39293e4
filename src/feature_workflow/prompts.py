"""Prompt templates with optional per-workspace overrides.

A ``PromptCatalog`` is an immutable value: defaults merged with the overrides
file once, then passed to whatever needs prompts. Changing overrides means
building a new catalog.

Templates use ``{name}`` placeholders filled in a single pass, so values that
themselves contain braces (review text, diffs) are never re-expanded.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([a-z_]+)\}")

_VERDICT_INSTRUCTIONS = """IMPORTANT: You MUST end your review with a structured verdict block using EXACTLY this format:

---
## VERDICT

**Action Required**: [NONE | MINOR | MAJOR]
**Builder Must Fix**: [YES | NO]

[If YES, list ONLY the specific changes required - no commentary]
---

Definitions:
- **MAJOR**: Blocking issues - security vulnerabilities, incorrect requirements, breaking changes, missing critical functionality. Must be fixed.
- **MINOR**: Suggestions that would improve quality - style, docs, minor optimizations.
- **NONE**: Correct as written. No changes needed.

Above the VERDICT block, you may include any analysis for human readers. Only the VERDICT block drives what happens next."""

DEFAULT_PROMPTS: Mapping[str, str] = MappingProxyType({
    "spec_generation_user": """Read the feature request at {request_path}

Generate a complete technical specification and save it to {spec_path}

The spec should include:
- Problem Statement
- Success Criteria
- Functional Requirements
- Data & API Changes
- Edge Cases
- Acceptance Tests
- Dependencies
- Risks

Consider the existing codebase architecture and conventions when writing the spec.
Do not include workflow metadata or status information in the spec.""",
    "plan_generation_user": """Read the approved specification at {spec_path}

Generate a detailed implementation plan and save it to {plan_path}

IMPORTANT: Divide the implementation into logical PHASES. Each phase should be:
- A coherent unit of work that can be reviewed independently
- Small enough to review effectively (typically 1-3 files changed)
- Large enough to be meaningful (not individual lines)

Mark phases clearly with "## Phase N: <description>" headers.
Trivial changes can be grouped into a single phase.
Complex features should have multiple phases.

The plan should include per phase:
- Files to create/modify
- Key changes in each file
- Dependencies on other phases
- Test expectations

Also include:
- Overview
- Database migrations (if needed)
- API updates (if needed)
- Rollback considerations

Use your knowledge of the codebase to identify specific files that need changes.""",
    "spec_review_system": """You are a critical technical design reviewer. Assess clarity, completeness, risk, testability.
Return a JSON object with these fields:
- hasMajorIssues (boolean): true if there are blocking problems
- summary (string): brief overall assessment
- majorIssues (array of strings): blocking problems that must be fixed
- minorIssues (array of strings): suggestions for improvement
- questions (array of strings): clarifications needed
- missingRequirements (array of strings): requirements not addressed
- securityRisks (array of strings): security or data privacy concerns""",
    "spec_review_user": "Please review this technical specification:\n\n{artifact_content}",
    "plan_review_system": """You are a senior engineering critic. Evaluate implementation feasibility, risks, testability, and missing tasks.
Return a JSON object with these fields:
- hasMajorIssues (boolean): true if there are blocking problems
- summary (string): brief overall assessment
- majorIssues (array of strings): blocking problems that must be fixed
- minorIssues (array of strings): suggestions for improvement
- missingSteps (array of strings): tasks not included in the plan
- riskAssessment (string): overall risk evaluation
- testabilityConcerns (array of strings): issues with testing the implementation""",
    "plan_review_user": "Please review this implementation plan:\n\n{artifact_content}",
    "review_incorporation": """Here is a review of the {artifact_type} you generated:

{review_content}

Please address any Major Issues and consider the Minor Issues.
Update the {artifact_type} file at {artifact_path} with your changes.
Briefly summarize what you changed.""",
    "build_phase_system": """You are a BUILDER agent implementing an approved plan.
Your task is to write production-quality code that exactly follows the plan.
Focus on the current phase only. Do not implement future phases.
After implementation, summarize what you changed.""",
    "build_phase_user": """Read the implementation plan at {plan_path}

Implement PHASE {phase_number}: {phase_description}

Write the code changes to the appropriate files.
Follow existing code patterns and conventions in this codebase.
Include appropriate error handling and comments where helpful.
Do not modify files outside this phase's scope.

After making changes, provide a brief summary of what you implemented.""",
    "build_review_incorporation": """Here is feedback on your implementation of Phase {phase_number}:

{review_content}

Address any Major Issues before proceeding.
Consider Minor Issues and incorporate where appropriate.
Update the relevant files and summarize your changes.""",
    "code_review_system": """You are a senior code reviewer. You will receive:
1. A code diff showing changes made
2. The feature specification
3. The implementation plan

Evaluate:
- Correctness: Do changes implement the spec/plan correctly?
- Completeness: Are any plan tasks missing from this phase?
- Quality: Clean code, proper error handling, no obvious bugs
- Security: No vulnerabilities introduced
- Testing: Are changes testable? Are tests included?

Return a JSON object with these fields:
- hasMajorIssues (boolean): true if there are blocking problems
- summary (string): brief overall assessment
- majorIssues (array of strings): blocking problems that must be fixed
- minorIssues (array of strings): suggestions for improvement
- securityConcerns (array of strings): security or data integrity risks
- missingFromPlan (array of strings): plan items not implemented in this phase
- testingSuggestions (array of strings): recommended test coverage""",
    "code_review_user": """## Feature Specification
{spec_content}

## Implementation Plan
{plan_content}

## Code Changes (Phase {phase_number})
```diff
{git_diff}
```

## Builder's Intent Summary
{intent_summary}

Please review these changes against the spec and plan.""",
    "agent_builder_review_user": """As the REVIEWER, evaluate the BUILDER's implementation against the plan.

Plan: {plan_path}
Phase {phase_number} implementation changes:
{diff_summary}

Evaluate:
1. Does the implementation correctly follow the plan?
2. Are there any design or quality concerns?
3. Does this integrate well with the existing codebase?

""" + _VERDICT_INSTRUCTIONS,
    "agent_spec_review_system": """You are a REVIEWER - a critical technical design reviewer.
Your role is to provide an independent, objective review of specifications.
You are NOT the author of this spec - you are reviewing someone else's work.

Be thorough but fair. Identify real problems, not stylistic preferences.""",
    "agent_spec_review_user": """Read the specification at {spec_path}

Review this specification for:
- Clarity: Is it clear and unambiguous?
- Completeness: Are all requirements covered?
- Feasibility: Is this implementable?
- Testability: Can the requirements be tested?
- Risk: Are there security, performance, or reliability concerns?

Format your response as a review document with these sections:

# Spec Review

## Summary
(Brief overall assessment)

## Major Issues
(List blocking problems that MUST be fixed, if any)

## Minor Issues
(List suggestions for improvement, if any)

## Questions
(List clarifications needed, if any)

## Missing Requirements
(List requirements not addressed, if any)

## Security Risks
(List security or data privacy concerns, if any)

Be direct and specific. If there are no issues in a section, omit that section.

""" + _VERDICT_INSTRUCTIONS,
    "agent_plan_review_system": """You are a REVIEWER - a senior engineering critic.
Your role is to provide an independent, objective review of implementation plans.
You are NOT the author of this plan - you are reviewing someone else's work.

Evaluate feasibility, risks, and completeness. Be constructive but thorough.""",
    "agent_plan_review_user": """Read the implementation plan at {plan_path}

Review this plan for:
- Feasibility: Can this be implemented as described?
- Completeness: Are all necessary tasks included?
- Order: Are tasks in the right sequence?
- Risk: Are there architectural, performance, or security risks?
- Testability: How will this be tested?

Format your response as a review document with these sections:

# Plan Review

## Summary
(Brief overall assessment)

## Major Issues
(List blocking problems that MUST be fixed, if any)

## Minor Issues
(List suggestions for improvement, if any)

## Missing Steps
(List tasks not included in the plan, if any)

## Risk Assessment
(Overall risk evaluation)

## Testability Concerns
(Issues with testing the implementation, if any)

Be direct and specific. If there are no issues in a section, omit that section.

""" + _VERDICT_INSTRUCTIONS,
    "agent_code_review_system": """You are a REVIEWER - a senior code reviewer.
Your role is to provide an independent, objective review of code changes.
You are NOT the author of this code - you are reviewing someone else's work.

Focus on correctness, security, and adherence to the spec and plan.""",
    "agent_code_review_user": """Review the following code changes against the spec and plan.

## Feature Specification
{spec_content}

## Implementation Plan
{plan_content}

## Code Changes (Phase {phase_number})
```diff
{git_diff}
```

## Builder's Intent Summary
{intent_summary}

Evaluate:
- Correctness: Do changes implement the spec/plan correctly?
- Completeness: Are any plan tasks missing from this phase?
- Quality: Clean code, proper error handling, no obvious bugs
- Security: No vulnerabilities introduced
- Testing: Are changes testable? Are tests included?

Format your response as a review document starting with "# Code Review - Phase {phase_number}" and a "## Summary" section, then end with the VERDICT block.

""" + _VERDICT_INSTRUCTIONS,
})


class PromptOverrides(BaseModel):
    """Shape of the overrides file. Keys may be snake_case or camelCase."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel, frozen=True)

    spec_generation_user: str | None = None
    plan_generation_user: str | None = None
    spec_review_system: str | None = None
    spec_review_user: str | None = None
    plan_review_system: str | None = None
    plan_review_user: str | None = None
    review_incorporation: str | None = None
    build_phase_system: str | None = None
    build_phase_user: str | None = None
    build_review_incorporation: str | None = None
    code_review_system: str | None = None
    code_review_user: str | None = None
    agent_builder_review_user: str | None = None
    agent_spec_review_system: str | None = None
    agent_spec_review_user: str | None = None
    agent_plan_review_system: str | None = None
    agent_plan_review_user: str | None = None
    agent_code_review_system: str | None = None
    agent_code_review_user: str | None = None


@dataclass(frozen=True)
class PromptCatalog:
    templates: Mapping[str, str] = field(default_factory=lambda: DEFAULT_PROMPTS)

    @classmethod
    def from_overrides(cls, overrides: PromptOverrides) -> "PromptCatalog":
        merged = dict(DEFAULT_PROMPTS)
        for key, value in overrides.model_dump(exclude_none=True).items():
            if value.strip():
                merged[key] = value
        return cls(templates=MappingProxyType(merged))

    @classmethod
    def from_file(cls, path: Path | None) -> "PromptCatalog":
        """Build a catalog from an optional JSON overrides file.

        Raises:
            FileNotFoundError: If ``path`` is given but does not exist.
            ValueError: If the file is not valid JSON or has unknown keys.
        """
        if path is None:
            return cls()
        if not path.is_file():
            raise FileNotFoundError(f"Prompt overrides file not found: {path}")
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Prompt overrides file {path} is not valid JSON: {exc}") from exc
        try:
            overrides = PromptOverrides.model_validate(payload)
        except ValidationError as exc:
            raise ValueError(f"Prompt overrides file {path} failed validation: {exc}") from exc
        catalog = cls.from_overrides(overrides)
        logger.info(
            "Loaded prompt overrides from %s: %s",
            path,
            sorted(overrides.model_dump(exclude_none=True)),
        )
        return catalog

    def template(self, key: str) -> str:
        try:
            return self.templates[key]
        except KeyError as exc:
            raise KeyError(f"Unknown prompt template: {key}") from exc

    def render(self, key: str, **values: object) -> str:
        return render_template(self.template(key), **values)

    def render_agent(self, system_key: str, user_key: str, **values: object) -> str:
        """Render a system + user pair as one prompt for the agent's stdin."""
        system = self.render(system_key, **values).strip()
        user = self.render(user_key, **values)
        return f"{system}\n\n---\n\n{user}" if system else user


def render_template(template: str, **values: object) -> str:
    def substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in values:
            return match.group(0)
        return str(values[name])

    return _PLACEHOLDER.sub(substitute, template)
