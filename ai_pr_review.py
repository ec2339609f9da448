#!/usr/bin/env python3
"""
AI PR REVIEW

Fetches a pull request from GitHub, asks an LLM to review it and posts the
answer back as a PR comment. Model calls go through ModelInvoker, which falls
back across a preference-ordered model list.
"""

import os
import sys
import math
import time
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from functools import wraps

import requests
import yaml

from model_invoker import (
    ModelInvoker, InvocationResult, build_candidate_list, classify, ErrorKind,
    DEFAULT_MAX_RETRIES, DEFAULT_BASE_DELAY
)
from model_providers import PROVIDERS, ModelProvider, create_provider, check_key_format
from review_errors import (
    ReviewError, ConfigError, APIError, SecurityError, GenerationError,
    ExhaustedFailure
)
from review_prompt import build_review_prompt, format_comment_body, load_prompt_template

# Production logging
def setup_logging(verbose: bool = False) -> logging.Logger:
    """Setup production logging with proper levels."""
    log_dir = Path.home() / '.ai-pr-review'
    log_dir.mkdir(exist_ok=True)

    level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    logger = logging.getLogger('ai_pr_review')
    logger.setLevel(level)
    logger.handlers.clear()  # Prevent duplicate handlers

    # Console handler
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    # File handler
    file_handler = logging.FileHandler(log_dir / 'review.log')
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    return logger

logger = setup_logging()

GITHUB_API_URL = "https://api.github.com"
SETTINGS_FILE = ".ai-pr-review.yml"
PROBE_PROMPT = "Reply with one sentence: hello, this is an API test."

PROVIDER_KEY_ENV = {
    'anthropic': ('ANTHROPIC_API_KEY', 'CLAUDE_API_KEY'),
    'openai': ('OPENAI_API_KEY',),
    'gemini': ('GEMINI_API_KEY', 'GOOGLE_API_KEY'),
}
PROVIDER_MODEL_ENV = {
    'anthropic': 'CLAUDE_MODEL',
    'openai': 'OPENAI_MODEL',
    'gemini': 'GEMINI_MODEL',
}

FAILURE_SUGGESTIONS = {
    ErrorKind.AUTH: "Check that the API key is correct and enabled",
    ErrorKind.MODEL_UNAVAILABLE: "The model may have been retired or the name is wrong",
    ErrorKind.QUOTA_EXCEEDED: "Wait a few minutes or upgrade the API plan",
    ErrorKind.TRANSIENT: "Retry later; the provider may be having problems",
}

# Retry decorator for GitHub calls
def _is_retryable(error: Exception) -> bool:
    status = getattr(error, 'status', None)
    return status is None or status == 429 or status >= 500

def retry_on_failure(max_retries: int = 3, delay: float = 1.0):
    """Decorator to retry API calls on network and server failures."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None
            if max_retries < 1:
                raise ValueError("max_retries must be >= 1")
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except (requests.exceptions.RequestException, APIError) as e:
                    if not _is_retryable(e):
                        raise
                    last_exception = e
                    if attempt < max_retries - 1:
                        wait_time = delay * (2 ** attempt)  # Exponential backoff
                        logger.warning(f"API call failed (attempt {attempt + 1}/{max_retries}), retrying in {wait_time}s: {e}")
                        time.sleep(wait_time)
                    else:
                        logger.error(f"API call failed after {max_retries} attempts: {e}")
            if last_exception is not None:
                raise last_exception
            else:
                raise RuntimeError("No exception captured in retry_on_failure")
        return wrapper
    return decorator

# Type-safe configuration
@dataclass
class ReviewConfig:
    """Complete configuration with validation."""
    github_token: str
    ai_provider: str  # 'anthropic', 'openai' or 'gemini'
    ai_key: str
    ai_model: str
    repo: str
    fallback_models: List[str] = field(default_factory=list)  # Empty means the provider's list
    max_retries_per_model: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_BASE_DELAY
    max_tokens: int = 4096
    prompt_template: str = ""

    def validate(self) -> None:
        """Validate all configuration values."""
        if len(self.github_token) < 20:
            raise SecurityError(
                "GitHub token too short",
                "Get a valid token at https://github.com/settings/tokens"
            )
        if self.ai_provider not in PROVIDERS:
            raise ConfigError(
                f"Unsupported AI provider: {self.ai_provider}",
                f"Use one of: {', '.join(sorted(PROVIDERS))}"
            )
        if len(self.ai_key) < 20:
            raise SecurityError(
                f"{self.ai_provider} API key too short",
                f"Get a valid key from {PROVIDERS[self.ai_provider].console_url}"
            )
        if '/' not in self.repo:
            raise ConfigError(
                "Invalid repository format",
                "Use format 'owner/repo' (e.g. 'microsoft/vscode')"
            )
        if self.max_retries_per_model < 0:
            raise ConfigError("max_retries_per_model must be >= 0")
        if not math.isfinite(self.retry_base_delay) or self.retry_base_delay < 0:
            raise ConfigError(
                f"Invalid retry_base_delay: {self.retry_base_delay}",
                "Use a finite number of seconds >= 0"
            )
        if self.max_tokens < 1:
            raise ConfigError("max_tokens must be positive")
        check_key_format(self.ai_provider, self.ai_key)

    def candidate_models(self) -> List[str]:
        fallback = self.fallback_models or PROVIDERS[self.ai_provider].fallback_models
        return build_candidate_list(self.ai_model, fallback)

# Configuration loading
def load_settings(path: Optional[str] = None) -> Dict[str, Any]:
    """Load non-secret settings from the YAML settings file, if present."""
    settings_file = Path(path or os.getenv('AI_REVIEW_CONFIG') or SETTINGS_FILE)
    if not settings_file.exists():
        if path:
            raise ConfigError(f"Settings file not found: {settings_file}")
        return {}

    try:
        with open(settings_file, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(
            f"Invalid settings file {settings_file}: {e}",
            "Fix the YAML syntax or remove the file"
        ) from e

    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {settings_file} must contain a mapping")
    logger.debug(f"Loaded settings from {settings_file}")
    return data

def _first_env(*names: str) -> Optional[str]:
    for name in names:
        value = (os.getenv(name) or '').strip()
        if value:
            return value
    return None

def _number(name: str, value: Any, cast):
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {name}: {value!r}", f"{name} must be a number") from None

def _model_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(',')
    return [str(model).strip() for model in value if str(model).strip()]

def _detect_provider() -> Optional[str]:
    for provider, key_names in PROVIDER_KEY_ENV.items():
        if _first_env(*key_names):
            return provider
    return None

def create_config_from_env(repo: str, settings: Optional[Dict[str, Any]] = None,
                           provider: Optional[str] = None, model: Optional[str] = None) -> ReviewConfig:
    """Create configuration from settings file values and environment variables.

    Secrets only come from the environment. For everything else the
    environment overrides the settings file, and explicit arguments override
    both.
    """
    settings = load_settings() if settings is None else settings

    github_token = _first_env('GITHUB_TOKEN', 'GITHUB_ACCESS_TOKEN')
    if not github_token:
        raise ConfigError(
            "GITHUB_TOKEN environment variable not found",
            "Set GITHUB_TOKEN (or GITHUB_ACCESS_TOKEN) to a token with pull request access"
        )

    ai_provider = provider or os.getenv('AI_PROVIDER') or settings.get('provider') or _detect_provider()
    if not ai_provider:
        raise ConfigError(
            "No AI provider API key found",
            "Set ANTHROPIC_API_KEY, OPENAI_API_KEY or GEMINI_API_KEY"
        )
    if ai_provider not in PROVIDERS:
        raise ConfigError(
            f"Unsupported AI provider: {ai_provider}",
            f"Use one of: {', '.join(sorted(PROVIDERS))}"
        )

    ai_key = _first_env(*PROVIDER_KEY_ENV[ai_provider])
    if not ai_key:
        raise ConfigError(
            f"No API key found for {ai_provider}",
            f"Set {' or '.join(PROVIDER_KEY_ENV[ai_provider])}"
        )

    ai_model = (
        model
        or _first_env('AI_MODEL', PROVIDER_MODEL_ENV[ai_provider])
        or settings.get('model')
        or PROVIDERS[ai_provider].fallback_models[0]
    )

    fallback_models = _model_list(os.getenv('AI_FALLBACK_MODELS') or settings.get('fallback_models'))
    max_retries = _number(
        'MAX_RETRIES_PER_MODEL',
        os.getenv('MAX_RETRIES_PER_MODEL', settings.get('max_retries_per_model', DEFAULT_MAX_RETRIES)),
        int
    )
    base_delay = _number(
        'RETRY_BASE_DELAY',
        os.getenv('RETRY_BASE_DELAY', settings.get('retry_base_delay', DEFAULT_BASE_DELAY)),
        float
    )
    max_tokens = _number('max_tokens', settings.get('max_tokens', 4096), int)

    custom_prompt = os.getenv('REVIEW_PROMPT_TEMPLATE')
    if custom_prompt:
        prompt_template = custom_prompt
        logger.info("Using custom prompt from REVIEW_PROMPT_TEMPLATE environment variable")
    else:
        prompt_template = load_prompt_template(settings.get('prompt_file'))

    config = ReviewConfig(
        github_token=github_token,
        ai_provider=ai_provider,
        ai_key=ai_key,
        ai_model=ai_model,
        repo=repo,
        fallback_models=fallback_models,
        max_retries_per_model=max_retries,
        retry_base_delay=base_delay,
        max_tokens=max_tokens,
        prompt_template=prompt_template
    )
    config.validate()

    logger.info(f"🤖 Using {ai_provider} with model {ai_model}")
    logger.debug(f"Candidate models: {', '.join(config.candidate_models())}")
    return config

# GitHub API client
class GitHubClient:
    """GitHub REST client for pull request data and comments."""

    def __init__(self, token: str, session: Optional[requests.Session] = None,
                 api_url: str = GITHUB_API_URL):
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github+json"
        })
        self.api_url = api_url.rstrip('/')

    @retry_on_failure(max_retries=3, delay=1.0)
    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = self.session.get(f"{self.api_url}{path}", params=params, timeout=30)
            response.raise_for_status()
            return response.json()

        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 401:
                raise APIError(
                    "Invalid GitHub token",
                    "Get a new token at https://github.com/settings/tokens",
                    status=status
                ) from e
            if status == 404:
                raise APIError(
                    f"GitHub resource not found: {path}",
                    "Check the repository name, PR number and token permissions",
                    status=status
                ) from e
            raise APIError(f"GitHub API error: {e}", status=status) from e
        except requests.exceptions.RequestException as e:
            raise APIError(f"GitHub API connection failed: {e}", "Check internet connection") from e

    def _get_paginated(self, path: str, per_page: int = 100) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            batch = self._get(path, params={"per_page": per_page, "page": page})
            items.extend(batch)
            if len(batch) < per_page:
                return items
            page += 1

    def get_pull_request(self, repo: str, pr_number: int) -> Dict[str, Any]:
        """Get PR details."""
        return self._get(f"/repos/{repo}/pulls/{pr_number}")

    def get_pull_request_files(self, repo: str, pr_number: int) -> List[Dict[str, Any]]:
        """Get changed files with their patches."""
        return self._get_paginated(f"/repos/{repo}/pulls/{pr_number}/files")

    def get_pull_request_comments(self, repo: str, pr_number: int) -> List[Dict[str, Any]]:
        """Get conversation comments followed by inline review comments."""
        comments = self._get_paginated(f"/repos/{repo}/issues/{pr_number}/comments")
        comments.extend(self._get_paginated(f"/repos/{repo}/pulls/{pr_number}/comments"))
        return comments

    def create_pull_request_comment(self, repo: str, pr_number: int, body: str) -> Dict[str, Any]:
        """Post a conversation comment; not retried so it is never posted twice."""
        try:
            response = self.session.post(
                f"{self.api_url}/repos/{repo}/issues/{pr_number}/comments",
                json={"body": body},
                timeout=30
            )
            response.raise_for_status()
            data = response.json()
            return {'id': data['id'], 'url': data.get('html_url')}

        except requests.exceptions.RequestException as e:
            raise APIError(f"Failed to post comment: {e}", "Check the token has pull request write access") from e

def write_github_output(values: Dict[str, Any]) -> None:
    """Append key=value pairs to the GitHub Actions step output, when running there."""
    output_path = os.getenv('GITHUB_OUTPUT')
    if not output_path:
        return
    try:
        with open(output_path, 'a', encoding='utf-8') as f:
            for key, value in values.items():
                f.write(f"{key}={value}\n")
    except OSError as e:
        logger.warning(f"Failed to write GitHub Actions output: {e}")

def generate_review(config: ReviewConfig, provider: ModelProvider, prompt: str) -> InvocationResult:
    """Run the prompt through the model fallback chain."""
    invoker = ModelInvoker(
        provider.generate,
        fallback_models=config.fallback_models or provider.fallback_models,
        max_retries_per_model=config.max_retries_per_model,
        base_delay=config.retry_base_delay
    )
    logger.info(f"🤖 {provider.display_name} is reviewing the code...")
    try:
        result = invoker.invoke(config.ai_model, prompt)
    except ExhaustedFailure as e:
        logger.error(
            f"❌ Every model failed. Last tried {e.model} "
            f"({classify(e.last_error).value}): {e.last_error}"
        )
        raise
    except GenerationError as e:
        logger.error(f"🔑 {provider.display_name} rejected the credentials: {e}")
        raise

    logger.info(f"✅ Review generated by {result.model_used} after {len(result.attempts)} attempt(s)")
    if result.model_used != config.ai_model:
        logger.warning(f"Requested model {config.ai_model} was not used; fell back to {result.model_used}")
    if result.usage:
        logger.info(f"📊 Token usage: input {result.usage.input_units}, output {result.usage.output_units}")
    return result

def review_pr(config: ReviewConfig, repo: str, pr_number: int,
              github: Optional[GitHubClient] = None,
              provider: Optional[ModelProvider] = None) -> Dict[str, Any]:
    """Review a PR with AI and post the result as a comment."""
    logger.info(f"🚀 Starting AI review for PR #{pr_number} in {repo}")
    github = github or GitHubClient(config.github_token)
    provider = provider or create_provider(config.ai_provider, config.ai_key, max_tokens=config.max_tokens)

    try:
        pr = github.get_pull_request(repo, pr_number)
        logger.info(f"Reviewing PR #{pr.get('number', pr_number)}: {pr.get('title')}")

        files = github.get_pull_request_files(repo, pr_number)
        logger.info(f"Fetched {len(files)} changed files")
        comments = github.get_pull_request_comments(repo, pr_number)
        logger.info(f"Fetched {len(comments)} existing comments")

        prompt = build_review_prompt(pr, files, comments, config.prompt_template)
        result = generate_review(config, provider, prompt)

        body = format_comment_body(result.text, provider.display_name, result.model_used)
        comment = github.create_pull_request_comment(repo, pr_number, body)

    except ReviewError as e:
        logger.error(f"PR review failed: {e}")
        write_github_output({'success': 'false'})
        raise

    logger.info(f"✅ Review posted (comment {comment['id']}): {comment['url']}")
    logger.info(f"📄 Review preview:\n{result.text[:500]}...")
    write_github_output({
        'success': 'true',
        'comment_url': comment['url'],
        'model_used': result.model_used
    })
    return comment

def probe_models(config: ReviewConfig, provider: Optional[ModelProvider] = None,
                 prompt: str = PROBE_PROMPT) -> List[Dict[str, Any]]:
    """Try every candidate model once and report which ones work."""
    provider = provider or create_provider(config.ai_provider, config.ai_key, max_tokens=100)
    results = []

    for model in config.candidate_models():
        logger.info(f"🧪 Testing model: {model}")
        started = time.monotonic()
        try:
            generation = provider.generate(model, prompt)
        except GenerationError as e:
            kind = classify(e)
            logger.warning(f"   ❌ {kind.value}: {e.message[:200]}")
            logger.info(f"   💡 {FAILURE_SUGGESTIONS[kind]}")
            results.append({'model': model, 'status': 'failed', 'kind': kind.value, 'message': e.message})
            continue

        duration = time.monotonic() - started
        logger.info(f"   ✅ OK in {duration * 1000:.0f}ms: {generation.text[:100]}")
        if generation.usage:
            logger.info(f"   📊 Token usage: input {generation.usage.input_units}, output {generation.usage.output_units}")
        results.append({'model': model, 'status': 'success', 'duration': duration})

    working = sorted((r for r in results if r['status'] == 'success'), key=lambda r: r['duration'])
    logger.info(f"📊 {len(working)}/{len(results)} models available")
    for i, r in enumerate(working, 1):
        logger.info(f"   {i}. {r['model']} ({r['duration'] * 1000:.0f}ms){' ⭐ fastest' if i == 1 else ''}")
    if working:
        logger.info(f"💡 Recommended: export AI_MODEL=\"{working[0]['model']}\"")
    return results

def _parse_options(args: List[str], allowed: List[str]) -> Dict[str, Any]:
    """Split args into positionals and --option values."""
    options: Dict[str, Any] = {'positional': [], 'verbose': False}
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--verbose":
            options['verbose'] = True
            i += 1
        elif arg in allowed and i + 1 < len(args):
            options[arg.lstrip('-')] = args[i + 1]
            i += 2
        elif arg.startswith("--"):
            raise ConfigError(f"Unknown option: {arg}", f"Use {', '.join(allowed + ['--verbose'])}")
        else:
            options['positional'].append(arg)
            i += 1
    return options

def _resolve_target(positional: List[str]) -> tuple:
    repo = positional[0] if positional else os.getenv('GITHUB_REPOSITORY')
    pr_number = positional[1] if len(positional) > 1 else os.getenv('PR_NUMBER')
    if not repo or not pr_number:
        raise ConfigError(
            "Repository and PR number are required",
            "Pass 'review-pr owner/repo PR_NUMBER' or set GITHUB_REPOSITORY and PR_NUMBER"
        )
    try:
        return repo, int(pr_number)
    except ValueError:
        raise ConfigError(f"Invalid PR number: {pr_number}") from None

def main():
    """Main entry point with complete error handling."""
    try:
        if len(sys.argv) == 1:
            logger.info("AI PR Review")
            logger.info("Usage:")
            logger.info("  ai-pr-review review-pr [owner/repo PR_NUMBER] [--model MODEL] [--provider PROVIDER] [--verbose]")
            logger.info("  ai-pr-review probe-models [--provider PROVIDER] [--verbose]")
            logger.info("")
            logger.info("Repository and PR number default to GITHUB_REPOSITORY and PR_NUMBER.")
            return

        command = sys.argv[1]

        if command == "review-pr":
            options = _parse_options(sys.argv[2:], ["--model", "--provider"])
            if options['verbose']:
                setup_logging(verbose=True)
            repo, pr_number = _resolve_target(options['positional'])
            config = create_config_from_env(repo, provider=options.get('provider'), model=options.get('model'))
            review_pr(config, repo, pr_number)
            logger.info("✅ AI code review complete!")

        elif command == "probe-models":
            options = _parse_options(sys.argv[2:], ["--provider"])
            if options['verbose']:
                setup_logging(verbose=True)
            repo = os.getenv('GITHUB_REPOSITORY', 'local/probe')
            config = create_config_from_env(repo, provider=options.get('provider'))
            results = probe_models(config)
            if not any(r['status'] == 'success' for r in results):
                raise ConfigError("No model is available", "Check the API key, quota and model names")

        else:
            raise ConfigError(f"Unknown command: {command}", "Use 'review-pr' or 'probe-models'")

    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)
    except ReviewError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        # This is the top-level catch-all for truly unexpected errors
        logger.error(f"Unexpected error: {e}", exc_info=True)
        sys.exit(1)

if __name__ == "__main__":
    main()
