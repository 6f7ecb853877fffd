import os
import tempfile
from types import SimpleNamespace

import pytest

_WORK_DIR = tempfile.mkdtemp(prefix="palmer_tests_")
os.environ["UPLOADS_DIR"] = os.path.join(_WORK_DIR, "uploads")
os.environ["RESULTS_DIR"] = os.path.join(_WORK_DIR, "results")
os.environ["SESSION_DIR"] = os.path.join(_WORK_DIR, "sessions")
for _name in [k for k in os.environ if k.startswith("GROQ_API_KEY")]:
    del os.environ[_name]


class FakeCompletions:
    """Stands in for client.chat.completions; replays canned contents in order."""

    def __init__(self, contents):
        self.contents = list(contents)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        content = self.contents.pop(0) if len(self.contents) > 1 else self.contents[0]
        if isinstance(content, Exception):
            raise content
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def make_fake_client(*contents):
    completions = FakeCompletions(contents)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


@pytest.fixture
def fake_client():
    return make_fake_client


@pytest.fixture
def char_measure():
    """Deterministic measurer: 10 units per code point."""
    return lambda text: 10.0 * len(text)
