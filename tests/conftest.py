import os
import tempfile
from pathlib import Path

# The API module wires its collaborators at import time.
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("DUFFEL_API_KEY", None)
os.environ.setdefault("STREAM_AGENT_DB", str(Path(tempfile.mkdtemp()) / "stream_agent.db"))
