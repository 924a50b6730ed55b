"""
Configuration loader for the invoice intake service
"""
import os
import yaml
from dotenv import load_dotenv
from pathlib import Path

# Load environment variables
load_dotenv()


def _build_database_url() -> str:
    """Resolve the database URL from DATABASE_URL or the DB_* parts"""
    url = os.getenv('DATABASE_URL')
    if url:
        return url

    dialect = os.getenv('DB_DIALECT', 'sqlite')
    if dialect == 'postgres':
        return (
            f"postgresql://{os.getenv('DB_USERNAME', 'postgres')}:{os.getenv('DB_PASSWORD', 'password')}"
            f"@{os.getenv('DB_HOST', 'localhost')}:{os.getenv('DB_PORT', '5432')}"
            f"/{os.getenv('DB_NAME', 'pilot_invoices')}"
        )
    return os.getenv('DB_STORAGE', 'sqlite:///./invoices.db')


class Config:
    """Application configuration"""

    # Database
    DATABASE_URL = _build_database_url()

    # n8n extraction workflow
    N8N_BASE_URL = os.getenv('N8N_BASE_URL', 'http://localhost:5678')
    N8N_API_KEY = os.getenv('N8N_API_KEY')
    N8N_WEBHOOK_URL = os.getenv('N8N_WEBHOOK_URL', f"{N8N_BASE_URL}/webhook/invoice-processing")
    N8N_WHATSAPP_WEBHOOK_URL = os.getenv(
        'N8N_WHATSAPP_WEBHOOK_URL', f"{N8N_BASE_URL}/webhook/whatsapp-processing"
    )
    N8N_TIMEOUT_SECONDS = float(os.getenv('N8N_TIMEOUT_SECONDS', '30'))
    BACKEND_URL = os.getenv('BACKEND_URL', 'http://localhost:3001')

    # WhatsApp Business webhook
    WHATSAPP_VERIFY_TOKEN = os.getenv('WHATSAPP_VERIFY_TOKEN', 'pilot_whatsapp_verify')

    # Uploads
    UPLOAD_DIR = os.getenv('UPLOAD_DIR', './uploads')
    MAX_FILE_SIZE = int(os.getenv('MAX_FILE_SIZE', str(10 * 1024 * 1024)))
    STAGING_MAX_AGE_SECONDS = int(os.getenv('STAGING_MAX_AGE_SECONDS', '3600'))

    # Processing rules
    AUTO_VALIDATE_THRESHOLD = float(os.getenv('AUTO_VALIDATE_THRESHOLD', '0.9'))
    MAX_PROCESSING_RETRIES = int(os.getenv('MAX_PROCESSING_RETRIES', '3'))

    # HTTP ingress
    FRONTEND_URL = os.getenv('FRONTEND_URL', 'http://localhost:5173')
    RATE_LIMIT_MAX_REQUESTS = int(os.getenv('RATE_LIMIT_MAX_REQUESTS', '100'))
    RATE_LIMIT_WINDOW_SECONDS = int(os.getenv('RATE_LIMIT_WINDOW_SECONDS', str(15 * 60)))

    # Application Settings
    APP_ENV = os.getenv('APP_ENV', 'development')
    APP_HOST = os.getenv('APP_HOST', '0.0.0.0')
    APP_PORT = int(os.getenv('APP_PORT', '3001'))
    APP_VERSION = '1.0.0'

    # Logging
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FILE = os.getenv('LOG_FILE')

    _defaults = None

    @classmethod
    def load_defaults(cls):
        """Load static defaults (upload allowlist, WhatsApp group settings) from YAML"""
        if cls._defaults is None:
            config_path = Path(__file__).parent / 'defaults.yaml'
            with open(config_path, 'r') as f:
                cls._defaults = yaml.safe_load(f) or {}
        return cls._defaults

    @classmethod
    def cors_origins(cls):
        return [origin.strip() for origin in cls.FRONTEND_URL.split(',') if origin.strip()]

    @classmethod
    def is_production(cls) -> bool:
        return cls.APP_ENV.lower() == 'production'


# Create singleton instance
config = Config()
