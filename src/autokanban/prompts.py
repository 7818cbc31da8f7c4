from __future__ import annotations

import json
import tomllib
from pathlib import Path

from autokanban.state.tasks import Task

RULE = "-" * 44
_SKIPPED_ENTRIES = {"node_modules", "__pycache__", "venv", "dist", "build"}


def describe_project(project_path: Path, description: str = "") -> str:
    """Root listing plus whatever name and description the project's manifest declares."""
    try:
        entries = sorted(
            entry.name
            for entry in project_path.iterdir()
            if not entry.name.startswith(".") and entry.name not in _SKIPPED_ENTRIES
        )
    except OSError:
        return f"Project at: {project_path}"

    lines = [f"Root entries: {', '.join(entries) if entries else '(empty)'}"]
    if description:
        lines.append(f"Description: {description}")

    pyproject = project_path / "pyproject.toml"
    if pyproject.is_file():
        try:
            meta = tomllib.loads(pyproject.read_text(encoding="utf-8")).get("project", {})
        except (OSError, tomllib.TOMLDecodeError):
            meta = {}
        if meta.get("name"):
            summary = f" - {meta['description']}" if meta.get("description") else ""
            lines.append(f"Python project: {meta['name']}{summary}")

    package_json = project_path / "package.json"
    if package_json.is_file():
        try:
            package = json.loads(package_json.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            package = {}
        if isinstance(package, dict):
            summary = f" - {package['description']}" if package.get("description") else ""
            lines.append(f"Node project: {package.get('name', 'unknown')}{summary}")
            scripts = package.get("scripts")
            if isinstance(scripts, dict) and scripts:
                lines.append(f"Scripts: {', '.join(scripts)}")
    return "\n".join(lines)


def _task_header(task: Task, *, with_meta: bool = True) -> str:
    header = f"TASK #{task.id}: {task.title}"
    if with_meta:
        header += f"\nType: {task.type} | Priority: {task.priority}"
    return header


def plan_prompt(
    task: Task,
    project_path: Path,
    project_description: str,
    project_context: str | None = None,
    previous_attempts: str = "",
) -> str:
    sections = [
        "You are a development agent. In this phase you ANALYSE and PLAN only. "
        "Do not write or modify any code yet.",
        RULE,
        f"PROJECT: {project_path}\n{project_description}",
        RULE,
    ]
    if project_context:
        sections += [
            "ACCUMULATED PROJECT CONTEXT (earlier decisions, stack, conventions):",
            project_context.strip(),
            RULE,
        ]
    if previous_attempts:
        sections += [
            "PREVIOUS ATTEMPTS AT THIS TASK (do not repeat the same mistakes):",
            previous_attempts,
            RULE,
        ]
    sections += [
        _task_header(task),
        "",
        task.content,
        RULE,
        "INSTRUCTIONS FOR THIS PHASE:\n"
        "1. Read the relevant project files to understand the structure.\n"
        "2. Respect the decisions and patterns recorded in the project context, if any.\n"
        "3. If there were previous attempts, work out what failed and avoid it.\n"
        "4. Name exactly which files must be created or modified.\n"
        "5. Describe the technical approach step by step.\n"
        "6. Call out likely problems or dependencies.",
        "",
        "End with a final line of EXACTLY this form:\n"
        "PLAN: <detailed plan naming the files to touch and the specific changes>",
    ]
    return "\n".join(sections)


def code_prompt(
    task: Task,
    project_path: Path,
    project_description: str,
    plan: str,
    feedback: str | None = None,
) -> str:
    sections = [
        "You are a development agent. Your job is to IMPLEMENT the task following the approved plan.",
        RULE,
        f"PROJECT: {project_path}\n{project_description}",
        RULE,
        _task_header(task),
        "",
        task.content,
        RULE,
        "APPROVED PLAN:",
        plan,
        RULE,
    ]
    if feedback:
        sections += [
            "FEEDBACK FROM THE PREVIOUS ITERATION:",
            feedback,
            "Fix exactly the problems listed above.",
            RULE,
        ]
    sections += [
        "INSTRUCTIONS FOR THIS PHASE:\n"
        f"- Work inside: {project_path}\n"
        "- Read files before modifying them.\n"
        "- Implement exactly what the plan describes.\n"
        "- Make no changes outside the scope of the task.\n"
        "- Do not commit or switch branches; the engine handles version control.",
        "",
        "End with a final line of EXACTLY one of:\n"
        "RESULT: completed - <short summary of what you did>\n"
        "RESULT: failed - <reason>",
    ]
    return "\n".join(sections)


def architecture_prompt(task: Task, project_path: Path, plan: str) -> str:
    return "\n".join(
        [
            "You are a software architect. Your job is to create the base structure of the project.",
            RULE,
            f"PROJECT: {project_path}",
            RULE,
            _task_header(task, with_meta=False),
            task.content,
            RULE,
            "APPROVED PLAN:",
            plan,
            RULE,
            "INSTRUCTIONS:\n"
            f"- Work inside: {project_path}\n"
            "- Create the complete directory layout.\n"
            "- Create the package manifest with the dependencies of the chosen stack.\n"
            "- Create the base files (entry point, config, README.md, .gitignore, .env.example).\n"
            "- Install the dependencies.\n"
            "- Do NOT implement business logic; scaffolding and boilerplate only.\n"
            "- Leave TODO comments where future logic will go.",
            "",
            "End with a final line of EXACTLY one of:\n"
            "RESULT: completed - <summary of the structure created>\n"
            "RESULT: failed - <reason>",
        ]
    )


def review_prompt(task: Task, project_path: Path, plan: str) -> str:
    return "\n".join(
        [
            "You are a senior code reviewer. Your job is to REVIEW the code written for this task "
            "and find problems.",
            RULE,
            f"PROJECT: {project_path}",
            RULE,
            _task_header(task, with_meta=False),
            "",
            "PLAN THAT WAS TO BE IMPLEMENTED:",
            plan,
            RULE,
            "INSTRUCTIONS FOR THIS PHASE:\n"
            "1. Read the files that were changed for this task (see `git diff`).\n"
            "2. Check that the code correctly implements what was asked.\n"
            "3. Look for bugs, logic errors, security problems and broken code.\n"
            "4. Check that existing functionality still works.\n"
            "5. Check that the code follows the project's conventions.",
            "",
            "End with a final line of EXACTLY one of:\n"
            "REVIEW: approved - <short comment>\n"
            "REVIEW: rejected - <concrete list of problems to fix>",
        ]
    )


def qa_prompt(task: Task, project_path: Path) -> str:
    return "\n".join(
        [
            "You are a QA agent. Your job is to VERIFY with tests that the implementation works.",
            RULE,
            f"PROJECT: {project_path}",
            RULE,
            _task_header(task, with_meta=False),
            task.content,
            RULE,
            "INSTRUCTIONS FOR THIS PHASE:\n"
            "1. Find the project's existing tests and run them.\n"
            "2. If nothing covers this functionality, write basic tests and run them.\n"
            "3. Check the implemented behaviour against the acceptance criteria.\n"
            "4. Run the project's test and lint scripts if it has them.",
            "",
            "End with a final line of EXACTLY one of:\n"
            "TESTS: ok - <what was verified and the results>\n"
            "TESTS: failed - <which test failed and why>",
        ]
    )


def scope_prompt(
    task: Task,
    project_path: Path,
    plan: str,
    code_summary: str,
    context_file: Path,
    project_context: str | None = None,
) -> str:
    sections = [
        "You are a scope validation agent. Your job is to VERIFY that the implementation meets "
        "the requirements exactly, and to update the project's memory.",
        RULE,
        f"PROJECT: {project_path}",
        RULE,
    ]
    if project_context:
        sections += ["ACCUMULATED PROJECT CONTEXT:", project_context.strip(), RULE]
    sections += [
        _task_header(task),
        "",
        "ORIGINAL REQUIREMENTS AND ACCEPTANCE CRITERIA:",
        task.content,
        "",
        "PLAN THAT WAS FOLLOWED:",
        plan,
        "",
        "SUMMARY OF WHAT WAS IMPLEMENTED:",
        code_summary,
        RULE,
        "INSTRUCTIONS, IN THIS ORDER:\n"
        "1. Read the files that were changed for this task.\n"
        "2. Check EACH acceptance criterion against the actual implementation: is it "
        "implemented, does it work, is it complete?\n"
        "3. Check that it integrates with the rest of the system.\n"
        "4. Ask yourself whether the person who requested this would be satisfied trying it now.\n"
        "5. If the implementation is COMPLETE, update the file "
        f"{context_file}\n"
        "   - If it does not exist, create it with these sections:\n"
        "     # Project Context\n"
        "     ## Tech stack\n"
        "     ## Architecture decisions\n"
        "     ## Implemented features\n"
        "     ## Project conventions\n"
        "   - Add what was learned in this task without removing earlier information.",
        "",
        "End with a final line of EXACTLY one of:\n"
        "SCOPE: ok - <which criteria were verified and met>\n"
        "SCOPE: incomplete - <specific list of what is missing or wrong>",
    ]
    return "\n".join(sections)


def interactive_prompt(task: Task) -> str:
    return (
        f"TASK #{task.id}: {task.title}\n\n{task.content}\n\n"
        "Please analyse this task and make the necessary changes to the project."
    )
