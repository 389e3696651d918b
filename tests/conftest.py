"""
Shared fixtures: a tiny GGUF llama written once per test run, real
and scripted sessions over it.

INL - 2025
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from llama_session import load, ModelConfig
from tiny_model import ScriptedBackend, write_tiny_gguf


@pytest.fixture(scope="session")
def tiny_gguf(tmp_path_factory):
    """Path of a tiny F32 llama GGUF (2 layers, 32-dim, GQA 4/2)."""
    path = tmp_path_factory.mktemp("models") / "tiny.gguf"
    return write_tiny_gguf(str(path), seed=0)


@pytest.fixture
def session(tiny_gguf):
    """Real torch-backed session over the tiny model."""
    s = load(ModelConfig(path=tiny_gguf, n_ctx=64, seed=0))
    yield s
    s.close()


@pytest.fixture
def scripted(tiny_gguf):
    """
    Factory for sessions driven by a ScriptedBackend.

    Usage:
        s, backend = scripted([10, 11, 12], n_ctx=16)
    """
    opened = []

    def make(script=(), then=2, fail_on_call=None, delay_s=0.0, **config):
        backend = ScriptedBackend(script=script, then=then, fail_on_call=fail_on_call, delay_s=delay_s)
        config.setdefault("n_ctx", 64)
        s = load(ModelConfig(path=tiny_gguf, **config), backend=backend)
        opened.append(s)
        return s, backend

    yield make
    for s in opened:
        s.close()
