import os
import tempfile

# settings are read at import time, so the environment is prepared before any app module loads
_TMP = tempfile.mkdtemp(prefix="casino-tests-")

os.environ.setdefault("BOT_TOKEN", "123456:test_token")
os.environ.setdefault("WEBAPP_URL", "https://example.com/app")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_TMP, 'app.db')}")
os.environ.setdefault("SECRET_KEY", "test-callback-secret")
os.environ.setdefault("ADMIN_IDS", "900")
os.environ.setdefault("BOT_POLLING", "false")
os.environ.setdefault("CRASH_BETTING_SECONDS", "600")
