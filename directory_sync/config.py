"""
Configuration for Directory Sync.

Settings come from a YAML file (``CONFIG_PATH`` or ``config.yaml``); the bind
password may instead be supplied through ``LDAP_BIND_PASSWORD``. Attribute to
field mappings are resolved once here into an ordered list, so the rest of the
package never sees the raw YAML shape.
"""

import os
import yaml
import logging
from collections import namedtuple
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """The configuration file is missing, unparsable or incomplete."""
    pass


FieldMapping = namedtuple('FieldMapping', ['attribute', 'field', 'kind'])

ACCOUNT_FORMS = ('username', 'principal', 'backslash', 'dn')
NESTED_GROUP_STRATEGIES = ('auto', 'in_chain', 'iterative')
MEMBERSHIP_WRITE_MODES = ('incremental', 'replace')
CACHE_BACKENDS = ('memory', 'shelve')
FIELD_KINDS = ('text', 'photo')

DEFAULT_CACHE_TTL = 8 * 60 * 60

# Section -> optional keys and the values used when they are absent
SECTION_DEFAULTS = {
    'directory': {
        'base_dn': '',
        'use_ssl': None,
        'start_tls': False,
        'verify_ssl': True,
        'connection_timeout': 10,
        'receive_timeout': 10,
        'account_canonical_form': None,
        'account_domain_name': None,
        'account_domain_name_short': None,
        'users_search_locations': [],
        'groups_search_locations': [],
        'new_users_dn': None,
        'new_groups_dn': None,
        'default_group': None,
        'password_history_workaround': False,
        'reset_missing_attributes': False,
        'photo_attributes': ['thumbnailphoto'],
        'thumbnail_path': 'thumbnails',
        'expired_flag_attribute': 'useraccountcontrol',
        'expired_flag_mask': 2,
        'nested_group_strategy': 'auto',
        'membership_write_mode': 'incremental',
        'field_mappings': [],
    },
    'cache': {
        'backend': 'memory',
        'ttl_seconds': DEFAULT_CACHE_TTL,
        'path': os.path.join('.cache', 'directory_sync'),
    },
    'logging': {
        'level': 'INFO',
        'log_dir': 'logs',
        'rotation': 'daily',
        'retention_days': 7,
    },
    'error_handling': {
        'max_retries': 3,
        'retry_wait_seconds': 5,
    },
}


class ConfigLoader:
    """Reads, validates and completes the application configuration."""

    # Dotted config key -> environment variable that replaces it when set
    ENV_OVERRIDES = {
        'directory.bind_password': 'LDAP_BIND_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: YAML file to read. Falls back to $CONFIG_PATH, then 'config.yaml'.
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Read the YAML file and return the completed configuration.

        Raises:
            ConfigurationError: The file does not exist, is not valid YAML or fails validation
        """
        try:
            with open(self.config_path, 'r') as f:
                raw = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {self.config_path}: {e}")

        return self.load_dict(raw)

    def load_dict(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate an already parsed configuration and fill in defaults.

        Args:
            config: Raw configuration dictionary

        Returns:
            The same dictionary, validated and with defaults applied
        """
        self.config = config

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        directory = self.config['directory']
        directory['field_mappings'] = resolve_field_mappings(directory['field_mappings'])

        logger.info(f"Loaded configuration from {self.config_path} "
                    f"({len(directory['field_mappings'])} field mappings)")
        return self.config

    def _apply_env_overrides(self):
        for dotted_key, env_var in self.ENV_OVERRIDES.items():
            value = os.getenv(env_var)
            if not value:
                continue
            *parents, leaf = dotted_key.split('.')
            section = self.config
            for name in parents:
                section = section.setdefault(name, {})
            section[leaf] = value
            logger.debug(f"{dotted_key} taken from ${env_var}")

    def _validate(self):
        """Raise a single ConfigurationError listing every invalid setting."""
        errors = []

        directory = self.config.get('directory') or {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not directory.get(field):
                errors.append(f"Missing required directory field: {field}")

        form = directory.get('account_canonical_form')
        if form is not None and str(form).lower() not in ACCOUNT_FORMS:
            errors.append(f"Unknown account_canonical_form '{form}' (expected one of {', '.join(ACCOUNT_FORMS)})")

        strategy = directory.get('nested_group_strategy')
        if strategy is not None and strategy not in NESTED_GROUP_STRATEGIES:
            errors.append(f"Unknown nested_group_strategy '{strategy}'")

        write_mode = directory.get('membership_write_mode')
        if write_mode is not None and write_mode not in MEMBERSHIP_WRITE_MODES:
            errors.append(f"Unknown membership_write_mode '{write_mode}'")

        for key in ('users_search_locations', 'groups_search_locations', 'photo_attributes'):
            value = directory.get(key)
            if value is not None and not isinstance(value, list):
                errors.append(f"directory.{key} must be a list")

        for i, mapping in enumerate(directory.get('field_mappings') or []):
            prefix = f"directory.field_mappings[{i}]"
            if not isinstance(mapping, dict):
                errors.append(f"{prefix} must be a mapping with attribute and field")
                continue
            if not mapping.get('attribute'):
                errors.append(f"Missing attribute for {prefix}")
            if not mapping.get('field'):
                errors.append(f"Missing field for {prefix}")
            if mapping.get('kind', 'text') not in FIELD_KINDS:
                errors.append(f"Unknown kind '{mapping.get('kind')}' for {prefix}")

        cache = self.config.get('cache') or {}
        backend = cache.get('backend')
        if backend is not None and backend not in CACHE_BACKENDS:
            errors.append(f"Unknown cache backend '{backend}'")
        ttl = cache.get('ttl_seconds')
        if ttl is not None and (not isinstance(ttl, int) or ttl <= 0):
            errors.append("cache.ttl_seconds must be a positive integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        for section_name, defaults in SECTION_DEFAULTS.items():
            section = self.config.setdefault(section_name, {})
            for key, value in defaults.items():
                # fresh list per config
                section.setdefault(key, list(value) if isinstance(value, list) else value)

        directory = self.config['directory']
        if directory['use_ssl'] is None:
            directory['use_ssl'] = directory['server_url'].lower().startswith('ldaps://')


def resolve_field_mappings(entries: List[Any]) -> List[FieldMapping]:
    """
    Turn configured attribute mappings into an ordered list of FieldMapping tuples.

    Entries may be dicts ({attribute, field, kind}) or already resolved tuples.
    Attribute names are lower-cased to match normalized directory records.
    """
    mappings = []
    for entry in entries or []:
        if isinstance(entry, FieldMapping):
            mappings.append(entry)
            continue
        if isinstance(entry, dict):
            attribute, field, kind = entry.get('attribute'), entry.get('field'), entry.get('kind', 'text')
        else:
            attribute, field, kind = (tuple(entry) + ('text',))[:3]
        if not attribute or not field:
            raise ConfigurationError(f"Invalid field mapping: {entry!r}")
        mappings.append(FieldMapping(str(attribute).lower(), field, kind))
    return mappings



def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Shortcut for ``ConfigLoader(config_path).load()``."""
    return ConfigLoader(config_path).load()
