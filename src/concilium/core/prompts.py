"""Prompt builders for the three deliberation stages."""

from __future__ import annotations

from ..models.council import Stage1Result, Stage2Result

READ_ONLY_SYSTEM_PROMPT = (
    "You are a research advisor on a multi-agent council. Propose a plan, never "
    "implement it. Return the plan as markdown in your response. Do not write, edit, "
    "create or delete files, and do not use write, edit or bash tools. Only read-only "
    "tools (read, glob, grep, web search) are allowed. Never ask the user questions; "
    "you run unattended, so make your best judgment and state your assumptions."
)


def response_label(index: int) -> str:
    """0 -> "Response A", 1 -> "Response B", ..."""
    return f"Response {chr(ord('A') + index)}"


def wrap_prompt_for_research(prompt: str) -> str:
    """Wrap a user request in the read-only, plan-only research preamble."""
    return f"""You are a senior software engineer on a multi-agent review council. Your only job is to PROPOSE an implementation plan. You must NEVER carry it out.

## RULES

1. **Never write, edit, create or delete files.** Make zero file modifications.
2. **Never use write, edit or bash tools.** They are not permitted and will fail.
3. **Never run code or change state.** No commits, no package installs.
4. **Do not implement the solution.** Code you show is a proposal, not something to save.
5. **Never ask the user anything.** You run without user interaction. When unsure, decide and record the assumption in the plan.
6. **Do use read-only tools** (reading files, grep, glob, web search) to study the codebase.

## TASK

Research the codebase for the request below and return a **detailed implementation plan as markdown** in your response. Cover:

- **Codebase analysis**: the relevant files, modules and patterns, and the call chain involved.
- **Implementation steps**: concrete file paths, functions and types to change.
- **Code snippets**: proposed changes inline, labelled as proposals.
- **Edge cases and risks**: concurrency, compatibility, error handling and regressions.
- **Testing**: which tests to add or update and what they must cover.

Be specific and reference the code you actually found. Other reviewers will rank your plan against competing proposals, and your output is only the markdown in your response.

## USER REQUEST

{prompt}"""


def build_ranking_prompt(
    user_query: str, stage1_results: list[Stage1Result]
) -> tuple[str, dict[str, str]]:
    """Build the blind-review prompt and the label -> model mapping."""
    label_to_model: dict[str, str] = {}
    blocks: list[str] = []
    for index, result in enumerate(stage1_results):
        label = response_label(index)
        label_to_model[label] = result.model
        blocks.append(f"{label}:\n{result.response}")
    responses_text = "\n\n".join(blocks)

    prompt = f"""You are a principal engineer running a blind code review. The implementation plans below were written independently for the same task and have been anonymized. You do not know who wrote which plan.

Task: {user_query}

Anonymized plans:

{responses_text}

Judge each plan on engineering merit rather than writing style:
1. **Correctness**: does the approach solve the problem without wrong assumptions about the code?
2. **Completeness**: are error handling, types, compatibility and migrations covered?
3. **Code quality**: are the proposed changes clean, idiomatic and consistent with the codebase?
4. **Architecture**: are the structural decisions sound and loosely coupled?
5. **Risk awareness**: are regressions, breaking changes, performance and security addressed?
6. **Testing**: is the proposed test coverage adequate?

Give a short, concrete review of each plan with its strengths and weaknesses.

IMPORTANT: end with your ranking in EXACTLY this format:
- A line reading "FINAL RANKING:" in capitals with the colon
- The responses from best to worst as a numbered list
- Each line holds only the number, a period, a space and the label (for example "1. Response A")
- Nothing else in the ranking section

FINAL RANKING:
1. Response C
2. Response A
3. Response B

Now write your review and ranking:"""

    return prompt, label_to_model


def build_synthesis_prompt(
    user_query: str,
    stage1_results: list[Stage1Result],
    stage2_results: list[Stage2Result],
) -> str:
    """Build the chairman prompt from the anonymized plans and the jurors' reviews."""
    stage1_text = "\n\n".join(
        f"{response_label(index)}:\n{result.response}"
        for index, result in enumerate(stage1_results)
    )
    stage2_text = "\n\n".join(
        f"Juror {index + 1} Evaluation:\n{result.ranking}"
        for index, result in enumerate(stage2_results)
    )

    return f"""You are the lead architect of a review council. Several engineers proposed implementation plans for the same task, and reviewers evaluated and ranked them.

Produce the **single best implementation plan** by combining the strongest parts of the proposals and the reviews.

Original task: {user_query}

STAGE 1 - Proposed plans (anonymized):
{stage1_text}

STAGE 2 - Reviewer evaluations:
{stage2_text}

Write one definitive plan that:
- Keeps the best decisions and insights from the top-ranked plans
- Fixes the gaps and mistakes the reviewers found
- Is complete: file paths, function names, edge cases, error handling, types and tests
- Settles reviewer disagreements with your own judgment
- Includes code snippets where they make the plan clearer

Write as the plan's author. Do not mention "Response A" or "Juror 2". Present one cohesive plan that is ready to execute:"""
