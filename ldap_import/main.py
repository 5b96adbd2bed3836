"""
Command line application for LDAP User Import.

Wires configuration, logging, the LDAP directory source, the local user store
and the importer together, runs an import and reports the outcome through
logs, exit codes and optional email notifications.
"""

import sys
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_import.config import load_config, ConfigurationError
from ldap_import.events import DeletedMissing
from ldap_import.exceptions import DirectorySourceUnavailable
from ldap_import.hydrator import AttributeHydrator, build_mappings
from ldap_import.importer import LdapUserImporter, SoftDeleteMissingListener, ImportReport
from ldap_import.ldap_client import LDAPClient, LDAPConnectionError
from ldap_import.logging_setup import setup_logging
from ldap_import.notifications import (
    send_failure_notification,
    send_directory_unavailable,
    send_import_summary,
)
from ldap_import.store import create_store_from_config

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_DIRECTORY_UNAVAILABLE = 3
EXIT_UNEXPECTED_ERROR = 4


class ImportApplication:
    """
    Runs a complete import from configuration.

    Command line flags override the matching ``import`` configuration options
    when they are not None.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.config = None
        self.ldap_client = None
        self.store = None
        self.report = None

    def run(self, username: Optional[str] = None, restore: Optional[bool] = None,
            trash: Optional[bool] = None, delete_missing: Optional[bool] = None) -> int:
        """
        Run the import.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            import_config = self._import_options(restore, trash, delete_missing)
            target = f"user '{username}'" if username else "all users"
            logger.info(f"Starting LDAP user import of {target}")

            self._connect_ldap()
            self.store = self._create_store()
            importer = self._create_importer(import_config)

            self.report = importer.run(username=username)

            self._log_import_summary(self.report)
            self._send_summary_notification(self.report)

            if not self.report.succeeded:
                problems = [f"{self.report.failed} failed object(s)"]
                if self.report.policy_errors:
                    problems.append(f"{len(self.report.policy_errors)} lifecycle policy error(s)")
                if self.report.reconcile_error is not None:
                    problems.append(f"missing record reconciliation failed: {self.report.reconcile_error}")
                logger.warning(f"Import completed with {', '.join(problems)}")
                return EXIT_PARTIAL_FAILURE

            logger.info("Import completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except (LDAPConnectionError, DirectorySourceUnavailable) as e:
            logger.error(f"Directory unavailable: {e}")
            self._send_directory_unavailable(str(e))
            return EXIT_DIRECTORY_UNAVAILABLE
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Import Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _import_options(self, restore: Optional[bool], trash: Optional[bool],
                        delete_missing: Optional[bool]) -> Dict[str, Any]:
        import_config = dict(self.config.get('import', {}))
        overrides = {
            'restore_enabled_users': restore,
            'trash_disabled_users': trash,
            'delete_missing': delete_missing,
        }
        for key, value in overrides.items():
            if value is not None:
                import_config[key] = value
        return import_config

    def _connect_ldap(self):
        ldap_config = self.config['ldap']
        error_config = self.config.get('error_handling', {})

        self.ldap_client = LDAPClient(ldap_config)
        try:
            self.ldap_client.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except LDAPConnectionError:
            self.ldap_client = None
            raise

    def _attribute_columns(self) -> Dict[str, bool]:
        columns = {}
        for name, spec in self.config['import']['sync_attributes'].items():
            columns[name] = isinstance(spec, dict) and bool(spec.get('all', False))
        return columns

    def _create_store(self):
        try:
            return create_store_from_config(self.config['database'], self._attribute_columns())
        except ValueError as e:
            raise ConfigurationError(str(e))

    def _create_importer(self, import_config: Dict[str, Any]) -> LdapUserImporter:
        try:
            mappings = build_mappings(import_config['sync_attributes'])
        except ValueError as e:
            raise ConfigurationError(str(e))

        hydrator = AttributeHydrator(mappings, domain=self.config['database'].get('domain'))

        importer = LdapUserImporter(
            source=self.ldap_client,
            store=self.store,
            hydrator=hydrator,
            restore_enabled_users=import_config.get('restore_enabled_users', False),
            trash_disabled_users=import_config.get('trash_disabled_users', False),
            logging_enabled=import_config.get('logging', True),
            import_filter=self.config['ldap'].get('import_filter') or None,
        )

        if import_config.get('delete_missing'):
            importer.listen(DeletedMissing, SoftDeleteMissingListener(import_config.get('logging', True)))

        return importer

    def _log_import_summary(self, report: ImportReport):
        summary = report.summary()

        runtime = summary['runtime_seconds']
        runtime_str = f"{runtime:.2f} seconds"
        if runtime > 60:
            runtime_str = f"{int(runtime // 60)}m {runtime % 60:.1f}s"

        logger.info("=== Import Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Directory objects: {summary['total_objects']}")
        logger.info(f"Users created: {summary['created']}")
        logger.info(f"Users updated: {summary['updated']}")
        logger.info(f"Users soft-deleted: {summary['trashed']}")
        logger.info(f"Users restored: {summary['restored']}")
        logger.info(f"Users missing from directory: {summary['missing']}")
        logger.info(f"Failed objects: {summary['failed']}")
        if summary['cancelled']:
            logger.info("Run was cancelled before all objects were processed")

        for failure in summary['failures']:
            logger.info(f"  {failure['dn']}: {failure['error']} - {failure['message']}")
        for failure in summary['policy_errors']:
            logger.info(f"  {failure['dn']}: lifecycle policy {failure['error']} - {failure['message']}")
        if summary['reconcile_error']:
            logger.info(f"Missing record reconciliation failed: {summary['reconcile_error']}")

    def _send_summary_notification(self, report: ImportReport):
        send_import_summary(report.summary(), self.config.get('notifications', {}))

    def _send_failure_notification(self, title: str, error_message: str):
        if not self.config:
            return
        send_failure_notification(title, error_message, self.config.get('notifications', {}))

    def _send_directory_unavailable(self, error_message: str):
        if not self.config:
            return
        retry_count = self.config.get('error_handling', {}).get('max_retries', 3)
        send_directory_unavailable(error_message, self.config.get('notifications', {}), retry_count)

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, LDAP connectivity and database access.

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
            return health_status

        try:
            client = LDAPClient(self.config['ldap'])
            client.connect(max_retries=1, retry_wait=0)
            directory_type = client.directory_type
            client.disconnect()
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': f'LDAP connection successful ({directory_type})'
            }
        except LDAPConnectionError as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            store = self._create_store()
            health_status['checks']['database'] = {
                'status': 'pass',
                'message': f'Table {store.table.name} available (soft deletes: {store.supports_soft_delete})'
            }
        except Exception as e:
            health_status['checks']['database'] = {
                'status': 'fail',
                'message': f'Database check failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status

    def _cleanup(self):
        if self.ldap_client:
            self.ldap_client.disconnect()


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Import LDAP users into the local user store')
    parser.add_argument('username', nargs='?', help='Import a single user found by ambiguous name resolution')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--restore', '-r', action='store_true', default=None,
                        help='Restore soft-deleted users whose directory account is enabled')
    parser.add_argument('--delete', '-d', action='store_true', default=None,
                        help='Soft-delete users whose directory account is disabled')
    parser.add_argument('--delete-missing', action='store_true', default=None,
                        help='Soft-delete users that are no longer in the directory')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of import')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    app = ImportApplication(config_path=args.config)

    if args.health_check:
        health_status = app.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            app._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)

        from ldap_import.notifications import send_test_notification
        if send_test_notification(app.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(app.run(
            username=args.username,
            restore=args.restore,
            trash=args.delete,
            delete_missing=args.delete_missing
        ))


if __name__ == "__main__":
    main()
