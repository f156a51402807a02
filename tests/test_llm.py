"""Unit tests for LLM utilities."""

import os
from unittest.mock import patch

import pytest

from autograde.grading.ai_adapter import create_ai_grading_agent
from autograde.libs.llm import create_agent


@pytest.fixture
def openai_config():
    return {
        "openai": {
            "api_key": "test-key",
            "organization": "test-org",
            "model": "gpt-4o-mini",
            "pydantic_ai_settings": {"temperature": 0.2}
        }
    }


class TestCreateAgent:

    def test_sets_environment(self, openai_config):
        with patch('autograde.libs.llm.OpenAIResponsesModel'), patch('autograde.libs.llm.Agent'):
            create_agent(openai_config)

        assert os.environ.get('OPENAI_API_KEY') == 'test-key'
        assert os.environ.get('OPENAI_ORG_ID') == 'test-org'

    def test_model_override_and_merged_settings(self, openai_config):
        with patch('autograde.libs.llm.OpenAIResponsesModel') as model_cls, \
                patch('autograde.libs.llm.OpenAIResponsesModelSettings', side_effect=dict) as settings_cls, \
                patch('autograde.libs.llm.Agent') as agent_cls:
            create_agent(openai_config, model="gpt-4o", settings_dict={"max_tokens": 500})

        model_cls.assert_called_once_with("gpt-4o")
        settings_cls.assert_called_once_with(temperature=0.2, max_tokens=500)
        kwargs = agent_cls.call_args.kwargs
        assert kwargs['model_settings'] == {"temperature": 0.2, "max_tokens": 500}
        assert kwargs['retries'] == 0
        assert 'system_prompt' not in kwargs

    def test_uses_configured_model(self, openai_config):
        with patch('autograde.libs.llm.OpenAIResponsesModel') as model_cls, patch('autograde.libs.llm.Agent'):
            create_agent(openai_config)
        model_cls.assert_called_once_with("gpt-4o-mini")

    def test_missing_api_key(self):
        with pytest.raises(KeyError, match="Key.*not found.*"):
            create_agent({})

    def test_grading_agent_has_system_prompt(self, openai_config):
        with patch('autograde.libs.llm.OpenAIResponsesModel'), patch('autograde.libs.llm.Agent') as agent_cls:
            create_ai_grading_agent(openai_config, settings_dict={"temperature": 0})

        prompt = agent_cls.call_args.kwargs['system_prompt']
        assert "grading assistant" in prompt
        assert "confident" in prompt
