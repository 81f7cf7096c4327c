import os
import tempfile

# kbchat.config creates its data and log directories on import.
_DATA_DIR = tempfile.mkdtemp(prefix="kbchat-tests-")
os.environ.setdefault("DATA_DIR", _DATA_DIR)
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
