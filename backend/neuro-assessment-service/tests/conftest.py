import os
import sys
import tempfile
from pathlib import Path


SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

# Keep tests hermetic regardless of local shell/.env values.
for _credential in ("ASSEMBLYAI_API_KEY", "GOOGLE_AI_API_KEY", "GEMINI_API_KEY", "OPENAI_API_KEY"):
    os.environ[_credential] = ""
os.environ["NEURO_STORE_BACKEND"] = "memory"
os.environ["NEURO_HEALTH_TTL_SECONDS"] = "60"
os.environ["NEURO_HEALTH_PROBE_TIMEOUT_SECONDS"] = "2"
os.environ["NEURO_ASSESS_TIMEOUT_SECONDS"] = "10"
os.environ["NEURO_PROVIDER_MAX_RETRIES"] = "0"
os.environ["NEURO_EXPOSE_ERRORS"] = "false"

_TEST_DATA_DIR = Path(tempfile.gettempdir()) / "neuro-assessment-service-tests"
_TEST_DATA_DIR.mkdir(parents=True, exist_ok=True)
os.environ["NEURO_LOCAL_DATA_DIR"] = str(_TEST_DATA_DIR)
os.environ["NEURO_SQLITE_DB_PATH"] = str(_TEST_DATA_DIR / "neuro_assessments.sqlite3")
