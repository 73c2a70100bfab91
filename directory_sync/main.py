"""
Command line entry point for directory administration tasks.

Exit codes: 0 success, 1 failure, 2 configuration error, 3 connection error.
"""

import sys
import json
import base64
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from directory_sync.cache import create_cache
from directory_sync.config import load_config, ConfigurationError
from directory_sync.errors import DataIntegrityError, ValidationError
from directory_sync.gateway import DirectoryGateway, DirectoryConnectionError, DirectoryError
from directory_sync.logging_setup import setup_logging
from directory_sync.query import QueryService

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_CONNECTION_ERROR = 3

ACTIONS = ('flush-cache', 'lookup-user', 'list-groups')


def _json_default(value: Any) -> Any:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode('ascii')
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class DirectoryAdmin:
    """Runs one administrative action against the configured directory."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.config = None
        self.gateway = None
        self.query = None

    def _load_configuration(self):
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")
        logger.debug("Configuration loaded successfully")

    def _connect(self):
        self.gateway = DirectoryGateway(self.config['directory'], self.config.get('error_handling'))
        self.gateway.connect()
        self.query = QueryService(self.gateway, self.config['directory'], cache=create_cache(self.config.get('cache')))

    def run(self, action: str, argument: Optional[str] = None) -> int:
        """
        Run an action: flush-cache, lookup-user or list-groups.

        Returns:
            Process exit code
        """
        if action not in ACTIONS:
            print(f"Unknown action: {action} (expected one of {', '.join(ACTIONS)})", file=sys.stderr)
            return EXIT_FAILURE
        if action == 'lookup-user' and not argument:
            print("lookup-user needs a username", file=sys.stderr)
            return EXIT_FAILURE

        try:
            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            if action == 'flush-cache':
                create_cache(self.config.get('cache')).clear()
                print("Directory result cache cleared")
                return EXIT_OK

            self._connect()

            if action == 'lookup-user':
                record = self.query.get_user_by_username(argument)
                if record is None:
                    print(f"User not found: {argument}", file=sys.stderr)
                    return EXIT_FAILURE
                print(json.dumps(record, indent=2, sort_keys=True, default=_json_default))
                return EXIT_OK

            # list-groups
            for dn in sorted(self.query.get_groups(attributes=['dn'])):
                print(dn)
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIGURATION_ERROR
        except DirectoryConnectionError as e:
            logger.error(f"Directory connection error: {e}")
            print(f"Directory connection error: {e}", file=sys.stderr)
            return EXIT_CONNECTION_ERROR
        except DirectoryError as e:
            logger.error(f"Directory error: {e}")
            print(f"Directory error: {e}", file=sys.stderr)
            return EXIT_FAILURE
        except (ValidationError, DataIntegrityError) as e:
            logger.error(f"Lookup failed: {e}")
            print(f"Lookup failed: {e}", file=sys.stderr)
            return EXIT_FAILURE
        finally:
            self._cleanup()

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration and directory connectivity.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'

        if self.config:
            error_config = dict(self.config.get('error_handling') or {}, max_retries=1, retry_wait_seconds=1)
            gateway = DirectoryGateway(self.config['directory'], error_config)
            try:
                gateway.connect()
                info = gateway.get_server_info()
                health_status['checks']['directory'] = {
                    'status': 'pass',
                    'message': 'Directory connection successful',
                    'vendor': info.get('vendor_name'),
                    'in_chain_matching': gateway.supports_in_chain_matching(),
                }
            except DirectoryError as e:
                health_status['checks']['directory'] = {
                    'status': 'fail',
                    'message': f'Directory connection failed: {e}'
                }
                health_status['status'] = 'unhealthy'
            finally:
                gateway.disconnect()
        else:
            health_status['checks']['directory'] = {
                'status': 'skip',
                'message': 'No configuration available'
            }

        return health_status

    def _cleanup(self):
        if self.gateway:
            self.gateway.disconnect()
            self.gateway = None


def main(argv=None):
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='Directory Sync administration')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Check configuration and directory connectivity')
    parser.add_argument('--flush-cache', action='store_true',
                        help='Clear cached directory query results')
    parser.add_argument('--lookup-user', metavar='USERNAME',
                        help='Print the directory record of a user')
    parser.add_argument('--list-groups', action='store_true',
                        help='Print the DN of every group in the search locations')

    args = parser.parse_args(argv)

    admin = DirectoryAdmin(config_path=args.config)

    if args.health_check:
        health_status = admin.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(EXIT_OK if health_status['status'] == 'healthy' else EXIT_FAILURE)
    elif args.flush_cache:
        sys.exit(admin.run('flush-cache'))
    elif args.lookup_user:
        sys.exit(admin.run('lookup-user', args.lookup_user))
    elif args.list_groups:
        sys.exit(admin.run('list-groups'))
    else:
        parser.print_help()
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
