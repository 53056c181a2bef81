import os

from dotenv import load_dotenv

# Values from a local .env file fill in whatever the environment leaves unset.
load_dotenv()


DATABASE_URL = os.getenv("CURRICULUM_DATABASE_URL", "sqlite:///./curriculum_studio.db")
LOG_LEVEL = os.getenv("CURRICULUM_LOG_LEVEL", "INFO").upper()

AI_URL = os.getenv("CURRICULUM_AI_URL", "")
AI_MODEL = os.getenv("CURRICULUM_AI_MODEL", "gemini-2.5-flash")
AI_KEY = os.getenv("CURRICULUM_AI_KEY", "")
AI_TIMEOUT = float(os.getenv("CURRICULUM_AI_TIMEOUT", "60"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CURRICULUM_CORS_ORIGINS", "*").split(",") if o.strip()]
