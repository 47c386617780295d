"""Pytest configuration and shared fixtures."""
import io

import pytest
from rich.console import Console

from chat_store import ChatStore
from mcp_chat import Config, custom_theme


@pytest.fixture
def store(tmp_path):
    """Chat store rooted in a temporary chats directory."""
    return ChatStore(tmp_path / "chats")


@pytest.fixture
def config(tmp_path, monkeypatch):
    """Config isolated under a temporary MCPCHAT_HOME."""
    home = tmp_path / "home"
    monkeypatch.setenv("MCPCHAT_HOME", str(home))
    cfg = Config(home=home)
    cfg.api_key = "test-key"
    cfg.chats_dir = str(tmp_path / "chats")
    return cfg


@pytest.fixture
def output():
    """Console writing into a string buffer."""
    return Console(file=io.StringIO(), width=200, theme=custom_theme)
