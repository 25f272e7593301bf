import os
from unittest.mock import patch

from conversation.config import ChatConfig
from server import build_config, parse_args


def test_from_env_reads_deployment_values():
    env = {
        "CHAT_LLM_MODEL": "llama-3.3-70b",
        "CHAT_LLM_API_KEY": "secret-key",
        "EMBEDDING_ENDPOINT": "http://embed:9000/v1/embeddings",
        "MEMORY_NAMESPACE_ROOT": "prod-chat",
        "JWT_SECRET": "signing",
        "FRONTEND_URLS": "http://a.example, http://b.example,",
    }
    with patch.dict(os.environ, env):
        config = ChatConfig.from_env()

    assert config.llm.model == "llama-3.3-70b"
    assert config.llm.api_key == "secret-key"
    assert config.embedding.endpoint == "http://embed:9000/v1/embeddings"
    assert config.memory.namespace_root == "prod-chat"
    assert config.auth.signing_secret == "signing"
    assert config.auth.allowed_origins == ["http://a.example", "http://b.example"]
    assert config.window_size == 20


def test_cli_flags_override_environment():
    with patch.dict(os.environ, {"CHAT_LLM_MODEL": "from-env", "JWT_SECRET": "signing"}):
        args = parse_args(["--llm_model", "from-cli", "--window_size", "8", "--inject_memory", "--memory_top_k", "0"])
        config = build_config(args)

    assert config.llm.model == "from-cli"
    assert config.window_size == 8
    assert config.inject_memory is True
    assert config.memory.top_k == 0
