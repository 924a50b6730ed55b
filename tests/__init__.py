import os
import tempfile

# Point the app at throwaway storage before core.config reads the environment
_TEST_ROOT = tempfile.mkdtemp(prefix="invoice-intake-tests-")

os.environ['DATABASE_URL'] = f"sqlite:///{os.path.join(_TEST_ROOT, 'test.db')}"
os.environ['UPLOAD_DIR'] = os.path.join(_TEST_ROOT, 'uploads')
os.environ['RATE_LIMIT_MAX_REQUESTS'] = '100000'
os.environ['APP_ENV'] = 'test'
os.environ['MAX_PROCESSING_RETRIES'] = '3'
os.environ['WHATSAPP_VERIFY_TOKEN'] = 'test-verify-token'
