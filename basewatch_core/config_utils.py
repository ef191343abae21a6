import json
import os
import re
from typing import Any, Dict

from dotenv import load_dotenv
from jsonschema import ValidationError, validate as jsonschema_validate

from basewatch_core.errors import ConfigError
from basewatch_core.models import BaseImageUpdateStrategy, EnrollmentMode, HelperConfig, WatchConfig

DEFAULT_CONFIG_FILE = '/etc/basewatch/basewatch_config.json'
DEFAULT_ENV_FILE = '/etc/basewatch/.env'

CONFIG_SCHEMA = {
    'type': 'object',
    'properties': {
        'check_interval': {'type': 'integer', 'minimum': 1},
        'enrollment_mode': {'type': 'string', 'enum': [m.value for m in EnrollmentMode]},
        'base_image_update': {'type': 'string', 'enum': [s.value for s in BaseImageUpdateStrategy]},
        'docker_config': {'type': ['string', 'null']},
        'known_updates_file': {'type': 'string'},
        'notify_again': {'type': 'boolean'},
        'check_tags': {'type': 'boolean'},
        'auto_rebuild': {'type': 'boolean'},
        'webhook_url': {'type': ['string', 'null']},
        'hostname': {'type': ['string', 'null']},
        'pull_timeout': {'type': 'integer', 'minimum': 1},
        'registry_cache_tokens': {'type': 'boolean'},
        'updater': {
            'type': 'object',
            'properties': {
                'image': {'type': 'string'},
                'entrypoint': {'type': ['string', 'null']},
                'mounts': {'type': 'array', 'items': {'type': 'string', 'pattern': '^[^:]+:[^:]+(:[^:]+)?$'}},
            },
        },
        'registries': {
            'type': 'object',
            'properties': {
                'ecr': {
                    'type': 'object',
                    'properties': {
                        'region': {'type': 'string'},
                        'aws_access_key_id': {'type': 'string'},
                        'aws_secret_access_key': {'type': 'string'},
                    },
                },
                'gcr': {
                    'type': 'object',
                    'properties': {
                        'service_account_path': {'type': 'string'},
                    },
                },
            },
        },
    },
}

DEFAULT_CONFIG: Dict[str, Any] = {
    'check_interval': 3600,
    'enrollment_mode': EnrollmentMode.OPT_OUT.value,
    'base_image_update': BaseImageUpdateStrategy.ONLY_PULL_UNKNOWN.value,
    'known_updates_file': '/var/lib/basewatch/known-updates.json',
    'check_tags': True,
    'auto_rebuild': False,
    'updater': {'image': 'docker', 'entrypoint': None, 'mounts': []},
    'registries': {},
}

_ENV_REF = re.compile(r"\$\{([^}]+)\}")
_TRUE = ('1', 'true', 'yes', 'on')
_FALSE = ('0', 'false', 'no', 'off')


def resolve_env_vars(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively resolve ${VAR} environment variables in a dict; unknown variables stay as written."""

    def replace_env_var(match):
        return os.getenv(match.group(1), match.group(0))

    def resolve(value):
        if isinstance(value, str):
            return _ENV_REF.sub(replace_env_var, value)
        if isinstance(value, dict):
            return resolve_env_vars(value)
        if isinstance(value, list):
            return [resolve(item) for item in value]
        return value

    return {key: resolve(value) for key, value in config_dict.items()}


def load_env_file(path: str, logger) -> bool:
    if not os.path.exists(path):
        return False
    load_dotenv(path, override=False)
    logger.info(f"Loaded environment from {path}")
    return True


def _env_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got '{value}'")


def apply_env_overrides(config: Dict[str, Any], logger) -> Dict[str, Any]:
    """Environment variables win over the config file."""
    result = dict(config)
    env_ci = os.getenv('CHECK_INTERVAL')
    if env_ci is not None:
        try:
            result['check_interval'] = int(env_ci)
        except ValueError:
            logger.warning(f"Ignoring non-numeric CHECK_INTERVAL '{env_ci}'")
    for key in ('ENROLLMENT_MODE', 'BASE_IMAGE_UPDATE', 'WEBHOOK_URL'):
        value = os.getenv(key)
        if value is not None:
            result[key.lower()] = value.strip().lower() if key != 'WEBHOOK_URL' else value
    docker_config = os.getenv('DOCKER_CONFIG_PATH')
    if docker_config is not None:
        result['docker_config'] = docker_config
    notify_again = os.getenv('NOTIFY_AGAIN')
    if notify_again is not None:
        result['notify_again'] = _env_bool('NOTIFY_AGAIN', notify_again)
    return result


def to_watch_config(config: Dict[str, Any]) -> WatchConfig:
    updater = config.get('updater') or {}
    return WatchConfig(
        check_interval=config.get('check_interval', 3600),
        enrollment_mode=EnrollmentMode(config.get('enrollment_mode', EnrollmentMode.OPT_OUT.value)),
        base_image_update=BaseImageUpdateStrategy(
            config.get('base_image_update', BaseImageUpdateStrategy.ONLY_PULL_UNKNOWN.value)
        ),
        docker_config=config.get('docker_config'),
        known_updates_file=config.get('known_updates_file', '/var/lib/basewatch/known-updates.json'),
        notify_again=config.get('notify_again', False),
        check_tags=config.get('check_tags', True),
        auto_rebuild=config.get('auto_rebuild', False),
        webhook_url=config.get('webhook_url'),
        hostname=config.get('hostname'),
        pull_timeout=config.get('pull_timeout', 300),
        registry_cache_tokens=config.get('registry_cache_tokens', True),
        updater=HelperConfig(
            image=updater.get('image', 'docker'),
            entrypoint=updater.get('entrypoint'),
            mounts=list(updater.get('mounts') or []),
        ),
        registries=config.get('registries') or {},
    )


def load_config(config_file: str, logger) -> WatchConfig:
    """Load, resolve and validate configuration, then apply environment overrides."""
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read configuration {config_file}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigError(f"Configuration {config_file} must be a JSON object")

    config = apply_env_overrides(resolve_env_vars(config), logger)
    try:
        jsonschema_validate(config, CONFIG_SCHEMA)
    except ValidationError as e:
        logger.error(f"Configuration validation error: {e.message}")
        raise ConfigError(e.message) from e

    watch_config = to_watch_config(config)
    logger.info(
        f"Loaded configuration: interval {watch_config.check_interval}s, "
        f"{watch_config.enrollment_mode.value}, {watch_config.base_image_update.value}"
    )
    return watch_config


def create_default_config(config_file: str, logger) -> str:
    """Create a default config file. Returns the path written."""
    try:
        config_dir = os.path.dirname(config_file) or '.'
        os.makedirs(config_dir, exist_ok=True)
        with open(config_file, 'w') as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
        logger.info(f"Created default configuration file: {config_file}")
        return config_file
    except OSError as e:
        local_path = './basewatch_config.json'
        logger.warning(f"Cannot write {config_file} ({e}), using {local_path}")
        with open(local_path, 'w') as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
        logger.info(f"Created local configuration file: {local_path}")
        return local_path
