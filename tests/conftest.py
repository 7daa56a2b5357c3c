import os
import sys


def _ensure_repo_on_path() -> None:
    root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if root not in sys.path:
        sys.path.append(root)


_ensure_repo_on_path()
# Tests run on the deterministic tier unless a fake capability is injected
os.environ.setdefault("ENABLE_ASSISTANT_LLM", "false")
os.environ.setdefault("OPENAI_API_KEY", "")
# No .log_api files from turn records
os.environ.setdefault("ENVIRONMENT", "test")
