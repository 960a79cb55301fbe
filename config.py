import os

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'a_very_secret_key_for_tora_sessions')
    DATA_DIR = os.environ.get('TORA_DATA_DIR', os.path.join(BASE_DIR, 'data'))

    GEMINI_API_KEY = os.environ.get('GEMINI_API_KEY')
    GEMINI_MODEL = os.environ.get('GEMINI_MODEL', 'gemini-2.5-flash')

    # Demo login: every national ID receives the same one-time password.
    MOCK_OTP = os.environ.get('MOCK_OTP', '123456')
    OTP_TTL_SECONDS = int(os.environ.get('OTP_TTL_SECONDS', 300))

    ADMIN_PASSWORD_HASH = os.environ.get('ADMIN_PASSWORD_HASH')
    ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD', 'onerwanda')

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    MAX_CONTENT_LENGTH = 2 * 1024 * 1024
