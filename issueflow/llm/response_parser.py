"""Response parsing utilities for agent output.

Extracts sections, summaries and structured blocks (decomposition plans,
knowledge base updates) from the markdown reports agents produce.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger("issueflow.llm.response_parser")


def extract_section(text: str, heading: str) -> Optional[str]:
    """Return the body of the first markdown section titled ``heading``.

    Matches any heading level; the section ends at the next heading.
    """
    pattern = rf"^#+\s*{re.escape(heading)}\s*$\n(.*?)(?=^#+\s|\Z)"
    match = re.search(pattern, text, re.IGNORECASE | re.MULTILINE | re.DOTALL)
    if not match:
        return None
    body = match.group(1).strip()
    return body or None


def extract_summary(output: str, limit: int = 300) -> str:
    """Short human-readable summary of an agent report for issue comments."""
    for heading in ("Executive Summary", "Summary"):
        section = extract_section(output, heading)
        if section:
            return section[:500]

    lines = [line for line in output.splitlines() if line.strip() and not line.startswith("#")]
    preview = "\n".join(lines[:5])
    return preview[:limit] + "..." if len(preview) > limit else preview


# ---------------------------------------------------------------------------
# Decomposition plans
# ---------------------------------------------------------------------------

@dataclass
class SubTask:
    title: str
    description: str
    acceptance_criteria: list[str] = field(default_factory=list)
    estimated_complexity: str = "medium"


@dataclass
class DecompositionPlan:
    should_decompose: bool = False
    sub_tasks: list[SubTask] = field(default_factory=list)
    reasoning: str = ""


_DECOMPOSE_DECISION = re.compile(r"##\s*Decision:\s*(DECOMPOSE|PROCEED)", re.IGNORECASE)
_SUB_TASK_HEADER = re.compile(r"^###\s*Sub-Task\s*\d+:\s*(.+)$", re.IGNORECASE | re.MULTILINE)


def parse_decomposition(output: str) -> DecompositionPlan:
    """Parse a decomposer report into a DecompositionPlan.

    Expected shape: ``## Decision: DECOMPOSE|PROCEED``, an optional
    ``## Reasoning`` section, then ``### Sub-Task N: <title>`` blocks with
    ``**Description:**``, ``**Acceptance Criteria:**`` checkbox lists and
    ``**Estimated Complexity:**``.
    """
    plan = DecompositionPlan()
    decision = _DECOMPOSE_DECISION.search(output)
    if decision:
        plan.should_decompose = decision.group(1).upper() == "DECOMPOSE"

    plan.reasoning = extract_section(output, "Reasoning") or ""
    if not plan.should_decompose:
        return plan

    headers = list(_SUB_TASK_HEADER.finditer(output))
    for i, header in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(output)
        body = output[header.end():end]

        desc = re.search(r"\*\*Description:\*\*\s*([^\n]+)", body, re.IGNORECASE)
        criteria_block = re.search(
            r"\*\*Acceptance Criteria:\*\*\s*\n((?:\s*- \[.?\] .+\n?)*)", body, re.IGNORECASE,
        )
        criteria = re.findall(r"- \[.?\] (.+)", criteria_block.group(1)) if criteria_block else []
        complexity = re.search(
            r"\*\*Estimated Complexity:\*\*\s*(Low|Medium|High)", body, re.IGNORECASE,
        )

        title = header.group(1).strip()
        description = desc.group(1).strip() if desc else ""
        if title and description:
            plan.sub_tasks.append(SubTask(
                title=title,
                description=description,
                acceptance_criteria=[c.strip() for c in criteria],
                estimated_complexity=complexity.group(1).lower() if complexity else "medium",
            ))

    logger.debug(
        "Parsed decomposition: decompose=%s sub_tasks=%d",
        plan.should_decompose, len(plan.sub_tasks),
    )
    return plan


def validate_decomposition(plan: DecompositionPlan, max_sub_tasks: int = 5) -> list[str]:
    """Return a list of problems; empty means the plan is usable."""
    errors: list[str] = []
    if not plan.should_decompose:
        return errors
    if not plan.sub_tasks:
        errors.append("Decision is DECOMPOSE but no sub-tasks found")
    if len(plan.sub_tasks) > max_sub_tasks:
        errors.append(f"Too many sub-tasks: {len(plan.sub_tasks)} (max: {max_sub_tasks})")
    for i, sub in enumerate(plan.sub_tasks, start=1):
        if len(sub.title) < 3:
            errors.append(f"Sub-task {i}: Title too short or missing")
        if len(sub.description) < 10:
            errors.append(f"Sub-task {i}: Description too short or missing")
        if not sub.acceptance_criteria:
            errors.append(f"Sub-task {i}: No acceptance criteria")
    return errors


# ---------------------------------------------------------------------------
# Knowledge base updates
# ---------------------------------------------------------------------------

@dataclass
class PageUpdate:
    page: str
    action: str  # "append", "update" or "create"
    content: str
    section: Optional[str] = None


@dataclass
class KnowledgeUpdates:
    updates: list[PageUpdate] = field(default_factory=list)
    commit_message: str = "Update wiki with issue documentation"


_PAGE_UPDATE = re.compile(
    r"###\s+([^\n]+\.md)\s*\n"
    r"\*\*Action:\*\*\s+(APPEND|UPDATE|CREATE)\s*\n"
    r"(?:\*\*Section:\*\*\s+([^\n]+)\s*\n)?"
    r"\*\*Content:\*\*\s*\n"
    r"```(?:markdown)?\s*\n(.*?)\n```",
    re.IGNORECASE | re.DOTALL,
)


def parse_knowledge_updates(output: str) -> KnowledgeUpdates:
    """Parse page-by-page wiki edits out of an archivist report."""
    parsed = KnowledgeUpdates()
    commit = re.search(r"##\s*Commit Message\s*\n(.+)", output, re.IGNORECASE)
    if commit and commit.group(1).strip():
        parsed.commit_message = commit.group(1).strip()

    for match in _PAGE_UPDATE.finditer(output):
        page, action, section, content = match.groups()
        parsed.updates.append(PageUpdate(
            page=page.strip(),
            action=action.lower(),
            section=section.strip() if section else None,
            content=content.strip(),
        ))

    if not parsed.updates:
        logger.warning("No wiki updates found in archivist output")
    return parsed


def apply_section_update(existing: str, section: Optional[str], new_content: str) -> str:
    """Append new_content inside the named ``## section`` (created if missing)."""
    if not section:
        return f"{existing}\n\n{new_content}"

    name = section
    if name.startswith("Create New Section:"):
        name = name[len("Create New Section:"):].strip()

    pattern = re.compile(rf"(##\s+{re.escape(name)}.*?)(?=\n##\s|\Z)", re.IGNORECASE | re.DOTALL)
    match = pattern.search(existing)
    if match:
        end = match.end(1)
        return existing[:end] + f"\n\n{new_content}" + existing[end:]
    return f"{existing}\n\n## {name}\n\n{new_content}"
