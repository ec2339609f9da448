#!/usr/bin/env python3
"""
Review prompt assembly from pull request data.
"""

import logging
from pathlib import Path
from typing import Dict, Any, List, Optional

logger = logging.getLogger('ai_pr_review')

MAX_PATCH_CHARS = 20000
MAX_PROMPT_CHARS = 120000

DEFAULT_TEMPLATE = """You are an experienced code reviewer. Review the pull request below.

Focus on:
1. Bugs and unhandled edge cases
2. Security issues (secrets in code, injection, unsafe input handling)
3. Performance problems
4. Readability, naming and structure
5. Missing or weak tests

For each finding give the file and line, what is wrong and a concrete fix.
If the change looks good, say so briefly. Do not repeat points already made
in the existing comments."""


def load_prompt_template(path: Optional[str] = None) -> str:
    """Load a review template from a file, falling back to the default."""
    if not path:
        return DEFAULT_TEMPLATE
    template_file = Path(path).expanduser()
    try:
        content = template_file.read_text(encoding='utf-8').strip()
    except OSError as e:
        logger.warning(f"Failed to load prompt template '{path}': {e}; using default")
        return DEFAULT_TEMPLATE
    return content or DEFAULT_TEMPLATE

def format_file(file: Dict[str, Any]) -> str:
    patch = file.get('patch') or '(binary file or no patch)'
    if len(patch) > MAX_PATCH_CHARS:
        patch = patch[:MAX_PATCH_CHARS] + "\n... (patch truncated)"
    return (
        f"### File: {file.get('filename')}\n"
        f"**Status**: {file.get('status')}\n"
        f"**Changes**: +{file.get('additions', 0)} -{file.get('deletions', 0)}\n"
        f"```diff\n{patch}\n```\n"
    )

def format_comments(comments: List[Dict[str, Any]]) -> str:
    if not comments:
        return "(no comments yet)"
    lines = []
    for comment in comments:
        author = (comment.get('user') or {}).get('login', 'unknown')
        location = ""
        if comment.get('path'):
            location = f" ({comment['path']}"
            if comment.get('line'):
                location += f":{comment['line']}"
            location += ")"
        lines.append(f"- {author}{location}: {(comment.get('body') or '').strip()}")
    return "\n".join(lines)

def build_review_prompt(pr: Dict[str, Any], files: List[Dict[str, Any]],
                        comments: List[Dict[str, Any]], template: Optional[str] = None) -> str:
    """Combine the review instructions with the PR metadata, patches and comments."""
    head = (pr.get('head') or {}).get('ref', '?')
    base = (pr.get('base') or {}).get('ref', '?')
    author = (pr.get('user') or {}).get('login', 'unknown')
    files_info = "\n".join(format_file(f) for f in files) or "(no files)"

    prompt = f"""{template or DEFAULT_TEMPLATE}

## Pull Request

**Title**: {pr.get('title', '')}
**Description**: {pr.get('body') or '(no description)'}
**Author**: {author}
**Branch**: {head} → {base}
**Changes**: +{pr.get('additions', 0)} -{pr.get('deletions', 0)} ({pr.get('changed_files', len(files))} files)

## Changed Files

{files_info}

## Existing Comments

{format_comments(comments)}
"""
    if len(prompt) > MAX_PROMPT_CHARS:
        logger.warning(f"Prompt is {len(prompt)} chars, truncating to {MAX_PROMPT_CHARS}")
        prompt = prompt[:MAX_PROMPT_CHARS] + "\n\n... (truncated)"
    return prompt

def format_comment_body(review: str, provider_name: str, model_used: str) -> str:
    """Wrap the model's review in the comment posted to the PR."""
    return (
        f"## AI Code Review\n\n"
        f"{review.strip()}\n\n"
        f"---\n"
        f"_🤖 Generated by ai-pr-review with {provider_name} `{model_used}`_\n"
    )
