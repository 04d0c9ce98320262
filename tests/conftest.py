import os

# Must be set before config.get_settings() is first called
os.environ.setdefault("APP_ENV", "testing")
