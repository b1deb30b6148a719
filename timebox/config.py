import os

MONGO_URI = os.getenv("MONGO_URI", "mongodb://mongo:27017")
DB_NAME = os.getenv("DB_NAME", "timebox")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Reminder worker
REMINDER_POLL_SECONDS = float(os.getenv("REMINDER_POLL_SECONDS", "1.0"))
DEADLINE_GRACE_SECONDS = int(os.getenv("DEADLINE_GRACE_SECONDS", "60"))
DELIVERY_TIMEOUT_SECONDS = float(os.getenv("DELIVERY_TIMEOUT_SECONDS", "5.0"))
WARNING_MINUTES = (5, 1)

# Deadline resolution
GRAMMAR_TIMEOUT_SECONDS = float(os.getenv("GRAMMAR_TIMEOUT_SECONDS", "0.5"))
MIN_DURATION_SECONDS = 60

DEFAULT_SNOOZE_MINUTES = int(os.getenv("DEFAULT_SNOOZE_MINUTES", "10"))
