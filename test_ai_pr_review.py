#!/usr/bin/env python3
"""
AI PR REVIEW TESTS

Configuration, GitHub client, review pipeline and CLI behaviour.
"""

import os
import sys
import logging
import tempfile
import pytest
from pathlib import Path
from unittest.mock import patch, MagicMock
import requests

sys.path.insert(0, os.path.dirname(__file__))
from ai_pr_review import (
    ReviewConfig, GitHubClient, load_settings, create_config_from_env,
    review_pr, probe_models, write_github_output, main
)
from model_invoker import Generation, Usage
from model_providers import ANTHROPIC_MODELS
from review_errors import (
    ConfigError, APIError, SecurityError, GenerationError, ExhaustedFailure
)

GITHUB_TOKEN = "ghp_" + "x" * 40
CLAUDE_KEY = "sk-ant-" + "x" * 40


def make_config(**overrides):
    values = dict(
        github_token=GITHUB_TOKEN,
        ai_provider="anthropic",
        ai_key=CLAUDE_KEY,
        ai_model="claude-custom",
        repo="owner/repo",
        fallback_models=["model-b", "model-c"],
        retry_base_delay=0.0
    )
    values.update(overrides)
    return ReviewConfig(**values)

def make_github():
    github = MagicMock()
    github.get_pull_request.return_value = {
        "number": 7, "title": "Add caching", "body": "Speeds things up",
        "user": {"login": "octocat"}, "head": {"ref": "feature"}, "base": {"ref": "main"},
        "additions": 10, "deletions": 2, "changed_files": 1
    }
    github.get_pull_request_files.return_value = [
        {"filename": "cache.py", "status": "added", "additions": 10, "deletions": 2, "patch": "+cache = {}"}
    ]
    github.get_pull_request_comments.return_value = [
        {"user": {"login": "reviewer"}, "body": "Please add tests"}
    ]
    github.create_pull_request_comment.return_value = {
        "id": 99, "url": "https://github.com/owner/repo/pull/7#issuecomment-99"
    }
    return github

def make_provider(side_effect):
    provider = MagicMock()
    provider.display_name = "Claude"
    provider.fallback_models = ["model-b", "model-c"]
    provider.generate.side_effect = side_effect
    return provider

def http_error_response(status):
    response = MagicMock()
    response.status_code = status
    response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} Error", response=response)
    return response


class TestReviewConfig:
    """Test configuration validation."""

    def test_valid_config(self):
        """Test valid configuration passes validation."""
        make_config().validate()  # Should not raise

    def test_short_github_token(self):
        with pytest.raises(SecurityError):
            make_config(github_token="short").validate()

    def test_short_ai_key(self):
        with pytest.raises(SecurityError):
            make_config(ai_key="short").validate()

    def test_invalid_repo_format(self):
        with pytest.raises(ConfigError):
            make_config(repo="invalid").validate()

    def test_unsupported_provider(self):
        with pytest.raises(ConfigError):
            make_config(ai_provider="cohere").validate()

    def test_negative_retries(self):
        with pytest.raises(ConfigError):
            make_config(max_retries_per_model=-1).validate()

    def test_non_finite_retry_delay(self):
        with pytest.raises(ConfigError):
            make_config(retry_base_delay=float("nan")).validate()
        with pytest.raises(ConfigError):
            make_config(retry_base_delay=float("inf")).validate()

    def test_defaults(self):
        """Retry count and backoff default to 2 retries and 3 seconds."""
        config = ReviewConfig(
            github_token=GITHUB_TOKEN, ai_provider="anthropic", ai_key=CLAUDE_KEY,
            ai_model="claude-3-5-haiku-20241022", repo="owner/repo"
        )
        assert config.max_retries_per_model == 2
        assert config.retry_base_delay == 3.0
        assert config.fallback_models == []

    def test_candidate_models_use_provider_list_by_default(self):
        config = make_config(ai_model=ANTHROPIC_MODELS[2], fallback_models=[])
        candidates = config.candidate_models()
        assert candidates[0] == ANTHROPIC_MODELS[2]
        assert sorted(candidates) == sorted(ANTHROPIC_MODELS)


class TestSettings:
    """Test YAML settings loading."""

    def setup_method(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_load_settings(self):
        settings_file = self.temp_dir / "settings.yml"
        settings_file.write_text(
            "provider: gemini\n"
            "model: gemini-1.5-pro\n"
            "fallback_models:\n"
            "  - gemini-1.5-flash\n"
            "max_retries_per_model: 1\n"
        )
        settings = load_settings(str(settings_file))
        assert settings["provider"] == "gemini"
        assert settings["fallback_models"] == ["gemini-1.5-flash"]
        assert settings["max_retries_per_model"] == 1

    def test_missing_default_file_is_empty(self):
        with patch.dict(os.environ, {"AI_REVIEW_CONFIG": str(self.temp_dir / "absent.yml")}):
            assert load_settings() == {}

    def test_missing_explicit_file_raises(self):
        with pytest.raises(ConfigError):
            load_settings(str(self.temp_dir / "absent.yml"))

    def test_invalid_yaml_raises(self):
        settings_file = self.temp_dir / "bad.yml"
        settings_file.write_text("provider: [unclosed\n")
        with pytest.raises(ConfigError):
            load_settings(str(settings_file))

    def test_non_mapping_raises(self):
        settings_file = self.temp_dir / "list.yml"
        settings_file.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_settings(str(settings_file))


class TestConfigFromEnv:
    """Test configuration assembled from the environment."""

    def test_claude_from_env(self):
        env = {"GITHUB_TOKEN": GITHUB_TOKEN, "CLAUDE_API_KEY": CLAUDE_KEY, "CLAUDE_MODEL": "claude-3-7-sonnet-20250219"}
        with patch.dict(os.environ, env, clear=True):
            config = create_config_from_env("owner/repo", settings={})

        assert config.ai_provider == "anthropic"
        assert config.ai_key == CLAUDE_KEY
        assert config.ai_model == "claude-3-7-sonnet-20250219"
        assert config.max_retries_per_model == 2
        assert config.retry_base_delay == 3.0

    def test_default_model_is_first_fallback(self):
        env = {"GITHUB_ACCESS_TOKEN": GITHUB_TOKEN, "ANTHROPIC_API_KEY": CLAUDE_KEY}
        with patch.dict(os.environ, env, clear=True):
            config = create_config_from_env("owner/repo", settings={})
        assert config.ai_model == ANTHROPIC_MODELS[0]

    def test_env_overrides_settings(self):
        env = {
            "GITHUB_TOKEN": GITHUB_TOKEN,
            "GEMINI_API_KEY": "AIza" + "x" * 35,
            "AI_FALLBACK_MODELS": "gemini-1.5-flash, gemini-1.5-flash-8b",
            "MAX_RETRIES_PER_MODEL": "4",
            "RETRY_BASE_DELAY": "1.5",
        }
        settings = {"provider": "gemini", "model": "gemini-1.5-pro", "max_retries_per_model": 1,
                    "fallback_models": ["ignored"]}
        with patch.dict(os.environ, env, clear=True):
            config = create_config_from_env("owner/repo", settings=settings)

        assert config.ai_provider == "gemini"
        assert config.ai_model == "gemini-1.5-pro"
        assert config.fallback_models == ["gemini-1.5-flash", "gemini-1.5-flash-8b"]
        assert config.max_retries_per_model == 4
        assert config.retry_base_delay == 1.5

    def test_explicit_arguments_win(self):
        env = {"GITHUB_TOKEN": GITHUB_TOKEN, "OPENAI_API_KEY": "sk-" + "x" * 40,
               "ANTHROPIC_API_KEY": CLAUDE_KEY, "AI_MODEL": "gpt-4o"}
        with patch.dict(os.environ, env, clear=True):
            config = create_config_from_env("owner/repo", settings={}, provider="openai", model="gpt-4o-mini")
        assert config.ai_provider == "openai"
        assert config.ai_model == "gpt-4o-mini"

    def test_missing_github_token(self):
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": CLAUDE_KEY}, clear=True):
            with pytest.raises(ConfigError):
                create_config_from_env("owner/repo", settings={})

    def test_missing_ai_key(self):
        with patch.dict(os.environ, {"GITHUB_TOKEN": GITHUB_TOKEN}, clear=True):
            with pytest.raises(ConfigError):
                create_config_from_env("owner/repo", settings={})

    def test_invalid_retry_count(self):
        env = {"GITHUB_TOKEN": GITHUB_TOKEN, "ANTHROPIC_API_KEY": CLAUDE_KEY, "MAX_RETRIES_PER_MODEL": "lots"}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigError):
                create_config_from_env("owner/repo", settings={})

    @pytest.mark.parametrize("value", ["nan", "inf", "-inf"])
    def test_non_finite_retry_delay_from_env(self, value):
        env = {"GITHUB_TOKEN": GITHUB_TOKEN, "ANTHROPIC_API_KEY": CLAUDE_KEY, "RETRY_BASE_DELAY": value}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigError):
                create_config_from_env("owner/repo", settings={})

    def test_secrets_stripped_of_whitespace(self):
        """Keys pasted into CI secrets often carry a trailing newline."""
        env = {"GITHUB_TOKEN": GITHUB_TOKEN + "\n", "ANTHROPIC_API_KEY": CLAUDE_KEY + "\n"}
        with patch.dict(os.environ, env, clear=True):
            config = create_config_from_env("owner/repo", settings={})
        assert config.github_token == GITHUB_TOKEN
        assert config.ai_key == CLAUDE_KEY

    def test_custom_prompt_from_env(self):
        env = {"GITHUB_TOKEN": GITHUB_TOKEN, "ANTHROPIC_API_KEY": CLAUDE_KEY,
               "REVIEW_PROMPT_TEMPLATE": "Only check spelling."}
        with patch.dict(os.environ, env, clear=True):
            config = create_config_from_env("owner/repo", settings={})
        assert config.prompt_template == "Only check spelling."


class TestGitHubClient:
    """Test GitHub API client functionality."""

    @patch('requests.Session.get')
    def test_get_pull_request(self, mock_get):
        mock_response = MagicMock()
        mock_response.json.return_value = {"title": "Test PR", "number": 123}
        mock_response.raise_for_status.return_value = None
        mock_get.return_value = mock_response

        pr = GitHubClient(GITHUB_TOKEN).get_pull_request("owner/repo", 123)

        assert pr["title"] == "Test PR"
        assert mock_get.call_args[0][0] == "https://api.github.com/repos/owner/repo/pulls/123"

    @patch('requests.Session.get')
    def test_files_paginated(self, mock_get):
        first = MagicMock()
        first.json.return_value = [{"filename": f"f{i}.py"} for i in range(100)]
        second = MagicMock()
        second.json.return_value = [{"filename": "last.py"}]
        mock_get.side_effect = [first, second]

        files = GitHubClient(GITHUB_TOKEN).get_pull_request_files("owner/repo", 1)

        assert len(files) == 101
        assert files[-1]["filename"] == "last.py"
        assert mock_get.call_args_list[1].kwargs["params"]["page"] == 2

    @patch('requests.Session.get')
    def test_comments_include_inline_comments(self, mock_get):
        issue_comments = MagicMock()
        issue_comments.json.return_value = [{"body": "general"}]
        review_comments = MagicMock()
        review_comments.json.return_value = [{"body": "inline", "path": "a.py", "line": 3}]
        mock_get.side_effect = [issue_comments, review_comments]

        comments = GitHubClient(GITHUB_TOKEN).get_pull_request_comments("owner/repo", 1)

        assert [c["body"] for c in comments] == ["general", "inline"]

    @patch('ai_pr_review.time.sleep')
    @patch('requests.Session.get')
    def test_not_found_not_retried(self, mock_get, mock_sleep):
        mock_get.return_value = http_error_response(404)

        with pytest.raises(APIError) as exc_info:
            GitHubClient(GITHUB_TOKEN).get_pull_request("owner/repo", 1)

        assert exc_info.value.status == 404
        assert mock_get.call_count == 1
        mock_sleep.assert_not_called()

    @patch('ai_pr_review.time.sleep')
    @patch('requests.Session.get')
    def test_connection_errors_retried(self, mock_get, mock_sleep):
        mock_get.side_effect = requests.exceptions.ConnectionError("down")

        with pytest.raises(APIError):
            GitHubClient(GITHUB_TOKEN).get_pull_request("owner/repo", 1)

        assert mock_get.call_count == 3
        assert [c[0][0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @patch('requests.Session.post')
    def test_create_pull_request_comment(self, mock_post):
        mock_response = MagicMock()
        mock_response.raise_for_status.return_value = None
        mock_response.json.return_value = {"id": 5, "html_url": "https://github.com/c/5"}
        mock_post.return_value = mock_response

        comment = GitHubClient(GITHUB_TOKEN).create_pull_request_comment("owner/repo", 7, "hello")

        assert comment == {"id": 5, "url": "https://github.com/c/5"}
        assert mock_post.call_args.kwargs["json"] == {"body": "hello"}
        assert mock_post.call_args[0][0].endswith("/repos/owner/repo/issues/7/comments")

    @patch('requests.Session.post')
    def test_create_comment_failure_not_retried(self, mock_post):
        mock_post.return_value = http_error_response(500)

        with pytest.raises(APIError):
            GitHubClient(GITHUB_TOKEN).create_pull_request_comment("owner/repo", 7, "hello")

        assert mock_post.call_count == 1


class TestReviewPipeline:
    """Test the end-to-end review flow."""

    def setup_method(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.output_file = self.temp_dir / "github_output"
        self.env_patcher = patch.dict(os.environ, {"GITHUB_OUTPUT": str(self.output_file)})
        self.env_patcher.start()

    def teardown_method(self):
        self.env_patcher.stop()
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_review_posted_with_model_used(self):
        github = make_github()
        provider = make_provider([Generation("Looks solid.", Usage(100, 20))])

        comment = review_pr(make_config(), "owner/repo", 7, github=github, provider=provider)

        assert comment["id"] == 99
        repo, number, body = github.create_pull_request_comment.call_args[0]
        assert (repo, number) == ("owner/repo", 7)
        assert "Looks solid." in body
        assert "`claude-custom`" in body
        prompt = provider.generate.call_args[0][1]
        assert "Add caching" in prompt
        assert "+cache = {}" in prompt
        assert "Please add tests" in prompt

        output = self.output_file.read_text()
        assert "success=true" in output
        assert "model_used=claude-custom" in output
        assert "comment_url=https://github.com/owner/repo/pull/7#issuecomment-99" in output

    def test_falls_back_to_next_model(self):
        github = make_github()
        provider = make_provider([
            GenerationError("not_found_error", status=404),
            Generation("Fallback review"),
        ])

        review_pr(make_config(), "owner/repo", 7, github=github, provider=provider)

        assert [c[0][0] for c in provider.generate.call_args_list] == ["claude-custom", "model-b"]
        body = github.create_pull_request_comment.call_args[0][2]
        assert "`model-b`" in body

    def test_exhausted_models_post_nothing(self):
        github = make_github()
        provider = make_provider(GenerationError("overloaded", status=529))

        with pytest.raises(ExhaustedFailure) as exc_info:
            review_pr(make_config(max_retries_per_model=0), "owner/repo", 7, github=github, provider=provider)

        assert exc_info.value.model == "model-c"
        assert provider.generate.call_count == 3
        github.create_pull_request_comment.assert_not_called()
        assert "success=false" in self.output_file.read_text()

    def test_auth_failure_surfaces(self):
        github = make_github()
        provider = make_provider(GenerationError("invalid x-api-key", status=401))

        with pytest.raises(GenerationError):
            review_pr(make_config(), "owner/repo", 7, github=github, provider=provider)

        assert provider.generate.call_count == 1
        github.create_pull_request_comment.assert_not_called()

    def test_comment_post_failure(self):
        github = make_github()
        github.create_pull_request_comment.side_effect = APIError("Failed to post comment")
        provider = make_provider([Generation("ok")])

        with pytest.raises(APIError):
            review_pr(make_config(), "owner/repo", 7, github=github, provider=provider)

        assert "success=false" in self.output_file.read_text()

    def test_github_output_skipped_outside_actions(self):
        with patch.dict(os.environ, {}, clear=True):
            write_github_output({"success": "true"})
        assert not self.output_file.exists()


class TestProbeModels:
    """Test the model availability probe."""

    def test_reports_each_candidate(self):
        provider = make_provider([
            Generation("hi", Usage(5, 3)),
            GenerationError("quota exceeded", status=429),
            GenerationError("not_found_error", status=404),
        ])

        results = probe_models(make_config(), provider=provider)

        assert [r["model"] for r in results] == ["claude-custom", "model-b", "model-c"]
        assert [r["status"] for r in results] == ["success", "failed", "failed"]
        assert results[1]["kind"] == "quota_exceeded"
        assert results[2]["kind"] == "model_unavailable"

    def test_recommends_model_override_that_wins(self, caplog):
        provider = make_provider([
            GenerationError("not_found_error", status=404),
            Generation("hi", None),
            Generation("hi", None),
        ])

        with caplog.at_level(logging.INFO, logger="ai_pr_review"):
            probe_models(make_config(), provider=provider)

        assert 'export AI_MODEL="model-' in caplog.text
        assert "CLAUDE_MODEL" not in caplog.text


class TestMain:
    """Test the command line entry point."""

    def test_main_shows_usage(self):
        with patch('sys.argv', ['ai-pr-review']):
            main()  # Should not raise

    def test_unknown_command_exits_1(self):
        with patch('sys.argv', ['ai-pr-review', 'bogus']):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1

    def test_missing_target_exits_1(self):
        with patch('sys.argv', ['ai-pr-review', 'review-pr']), patch.dict(os.environ, {}, clear=True):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1

    @patch('ai_pr_review.review_pr')
    @patch('ai_pr_review.create_config_from_env')
    def test_review_success_exits_cleanly(self, mock_config, mock_review):
        mock_config.return_value = make_config()
        with patch('sys.argv', ['ai-pr-review', 'review-pr', 'owner/repo', '7', '--model', 'claude-x']):
            main()

        mock_config.assert_called_once_with('owner/repo', provider=None, model='claude-x')
        mock_review.assert_called_once_with(mock_config.return_value, 'owner/repo', 7)

    @patch('ai_pr_review.review_pr')
    @patch('ai_pr_review.create_config_from_env')
    def test_target_from_environment(self, mock_config, mock_review):
        mock_config.return_value = make_config()
        env = {"GITHUB_REPOSITORY": "owner/repo", "PR_NUMBER": "12"}
        with patch('sys.argv', ['ai-pr-review', 'review-pr']), patch.dict(os.environ, env, clear=True):
            main()

        mock_review.assert_called_once_with(mock_config.return_value, 'owner/repo', 12)

    @patch('ai_pr_review.review_pr')
    @patch('ai_pr_review.create_config_from_env')
    def test_exhausted_review_exits_1(self, mock_config, mock_review):
        mock_config.return_value = make_config()
        mock_review.side_effect = ExhaustedFailure(GenerationError("overloaded", status=529), "model-c", 9)
        with patch('sys.argv', ['ai-pr-review', 'review-pr', 'owner/repo', '7']):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1

    def test_unknown_option_exits_1(self):
        with patch('sys.argv', ['ai-pr-review', 'review-pr', 'owner/repo', '7', '--fast']):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1

    @patch('ai_pr_review.probe_models')
    @patch('ai_pr_review.create_config_from_env')
    def test_probe_with_no_working_model_exits_1(self, mock_config, mock_probe):
        mock_config.return_value = make_config()
        mock_probe.return_value = [{"model": "m", "status": "failed", "kind": "auth", "message": "bad key"}]
        with patch('sys.argv', ['ai-pr-review', 'probe-models']):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
