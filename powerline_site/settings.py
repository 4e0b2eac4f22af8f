# powerline_site/settings.py

import os
from pathlib import Path

from celery.schedules import crontab

# Base directory of the project
BASE_DIR = Path(__file__).resolve().parent.parent


def env(name, default=None):
    return os.environ.get(name, default)


def env_int(name, default=None):
    value = os.environ.get(name)
    if value in (None, ""):
        return default
    return int(value)


# SECURITY WARNING: keep the secret key used in production!
SECRET_KEY = env("DJANGO_SECRET_KEY", "django-insecure-powerline-local-only")

DEBUG = env("DJANGO_DEBUG", "0") == "1"

ALLOWED_HOSTS = [h for h in env("DJANGO_ALLOWED_HOSTS", "127.0.0.1,localhost").split(",") if h]

# Application definition
INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",

    # ✅ App config (loads signals in apps.py)
    "powerlineapp.apps.PowerlineappConfig",

    # ✅ Celery results + beat
    "django_celery_results",
    "django_celery_beat",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "powerline_site.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "powerline_site.wsgi.application"

# =========================
# ✅ Database
# =========================
if env("POWERLINE_DB_ENGINE", "sqlite") == "postgresql":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": env("POWERLINE_DB_NAME", "powerline"),
            "USER": env("POWERLINE_DB_USER", "powerline"),
            "PASSWORD": env("POWERLINE_DB_PASSWORD", ""),
            "HOST": env("POWERLINE_DB_HOST", "localhost"),
            "PORT": env("POWERLINE_DB_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "powerline.sqlite3",
        }
    }

# =========================
# ✅ Celery + Redis
# =========================
CELERY_BROKER_URL = env("CELERY_BROKER_URL", "redis://127.0.0.1:6379/0")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_BACKEND = "django-db"
CELERY_TIMEZONE = env("POWERLINE_TIME_ZONE", "UTC")
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 60 * 30  # 30 mins
CELERY_TASK_ALWAYS_EAGER = env("CELERY_TASK_ALWAYS_EAGER", "0") == "1"

# Nightly qualification sweep, audit right after it
CELERY_BEAT_SCHEDULE = {
    "powerline-qualification-sweep": {
        "task": "powerlineapp.tasks.run_qualification_sweep_task",
        "schedule": crontab(hour=23, minute=59),
    },
    "powerline-tree-audit": {
        "task": "powerlineapp.tasks.audit_tree_task",
        "schedule": crontab(hour=0, minute=30),
    },
}

# =========================
# ✅ Cache (Redis when configured)
# =========================
if env("POWERLINE_REDIS_CACHE_URL"):
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.redis.RedisCache",
            "LOCATION": env("POWERLINE_REDIS_CACHE_URL"),
        }
    }
else:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        }
    }

# Password validation
AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = env("POWERLINE_TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

# ==========================================================
# ✅ PowerLine engine configuration
# ==========================================================
POWERLINE = {
    "ROOT_NODE_ID": env("POWERLINE_ROOT_NODE_ID", "PL"),
    "CYCLE_VOLUME": env("POWERLINE_CYCLE_VOLUME", "500"),
    "COMMISSION_PER_CYCLE": env("POWERLINE_COMMISSION_PER_CYCLE", "50.00"),
    "MAX_CYCLES_PER_WINDOW": env_int("POWERLINE_MAX_CYCLES_PER_WINDOW"),
    "QUALIFICATION_WINDOW": env("POWERLINE_QUALIFICATION_WINDOW", "daily"),
    "PLACEMENT_MAX_ATTEMPTS": 5,
    "MAX_POSITIONS": env_int("POWERLINE_MAX_POSITIONS"),
    "MAX_DEPTH": None,
    "BALANCE_ALERT_THRESHOLD": 1000,
    "SWEEP_COOLDOWN_MINUTES": 5,
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "plain",
        },
    },
    "loggers": {
        "django.request": {
            "handlers": ["console"],
            "level": "ERROR",
            "propagate": False,
        },
        "django": {
            "handlers": ["console"],
            "level": "INFO",
        },
        "powerlineapp": {
            "handlers": ["console"],
            "level": env("POWERLINE_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
