"""
Unit Tests for Configuration Management

Test Coverage:
    - Defaults and environment overrides
    - Bind address parsing ("0" and "" disable a listener)
    - Election namespace resolution order
    - Validation of ranges, lease timing and connection descriptors
    - Malformed numbers reported by validation instead of failing the import
    - create_config raising ConfigError with every problem
"""

import os
import tempfile
import unittest
from importlib import reload
from unittest.mock import patch

try:
    from . import config as config_module
    from .errors import ConfigError
    from .scheme import Scheme
except ImportError:
    import config as config_module
    from errors import ConfigError
    from scheme import Scheme

MANAGED_VARS = (
    'KUBECONFIG', 'KUBE_CONTEXT', 'APISERVER_HOST', 'ENABLE_LEADER_ELECTION', 'ELECTION_ID',
    'ELECTION_NAMESPACE', 'POD_NAMESPACE', 'POD_NAME', 'LEASE_DURATION_SECONDS',
    'RENEW_DEADLINE_SECONDS', 'RETRY_PERIOD_SECONDS', 'HEALTH_PROBE_BIND_ADDRESS',
    'METRICS_BIND_ADDRESS', 'GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS', 'RECONCILE_WORKERS',
    'INITIAL_BACKOFF_SECONDS', 'MAX_BACKOFF_SECONDS', 'WATCH_NAMESPACE', 'INGRESS_CLASS',
)


class ConfigTestCase(unittest.TestCase):
    """Saves and restores the environment around each test."""

    def setUp(self):
        self.original_env = os.environ.copy()
        for var in MANAGED_VARS:
            os.environ.pop(var, None)
        os.environ['POD_NAMESPACE'] = 'ingress-system'
        os.environ['POD_NAME'] = 'ingress-controller-0'

    def tearDown(self):
        os.environ.clear()
        os.environ.update(self.original_env)
        reload(config_module)

    def load(self):
        reload(config_module)
        return config_module.Config()


class TestConfigLoading(ConfigTestCase):
    """Test configuration loading from environment variables."""

    def test_defaults(self):
        cfg = self.load()
        self.assertTrue(cfg.election)
        self.assertEqual(cfg.election_id, 'ingress-controller-leader')
        self.assertEqual(cfg.probe_addr, ':8081')
        self.assertEqual(cfg.metrics_addr, ':8080')
        self.assertEqual(cfg.lease_duration, 15)
        self.assertEqual(cfg.renew_deadline, 10)
        self.assertEqual(cfg.retry_period, 2)
        self.assertEqual(cfg.graceful_shutdown_timeout, 30)
        self.assertEqual(cfg.ingress_class, 'haproxy')
        self.assertEqual(cfg.identity, 'ingress-controller-0')

    def test_environment_overrides(self):
        os.environ['ENABLE_LEADER_ELECTION'] = 'false'
        os.environ['HEALTH_PROBE_BIND_ADDRESS'] = '127.0.0.1:9440'
        os.environ['RECONCILE_WORKERS'] = '4'
        os.environ['WATCH_NAMESPACE'] = 'team-a'
        cfg = self.load()
        self.assertFalse(cfg.election)
        self.assertEqual(cfg.probe_addr, '127.0.0.1:9440')
        self.assertEqual(cfg.reconcile_workers, 4)
        self.assertEqual(cfg.watch_namespace, 'team-a')

    def test_config_is_immutable(self):
        cfg = self.load()
        with self.assertRaises(Exception):
            cfg.election_id = 'other'

    def test_in_cluster_when_no_connection_settings(self):
        cfg = self.load()
        self.assertTrue(cfg.cluster_connection.in_cluster)

    def test_kubeconfig_means_out_of_cluster(self):
        os.environ['KUBECONFIG'] = '/tmp/kubeconfig'
        os.environ['KUBE_CONTEXT'] = 'staging'
        connection = self.load().cluster_connection
        self.assertFalse(connection.in_cluster)
        self.assertEqual(connection.kubeconfig, '/tmp/kubeconfig')
        self.assertEqual(connection.context, 'staging')


class TestBindAddress(unittest.TestCase):
    """Test bind address parsing."""

    def test_disabled(self):
        self.assertIsNone(config_module.parse_bind_address('0'))
        self.assertIsNone(config_module.parse_bind_address(''))

    def test_all_interfaces(self):
        self.assertEqual(config_module.parse_bind_address(':8081'), ('', 8081))

    def test_host_and_port(self):
        self.assertEqual(config_module.parse_bind_address('127.0.0.1:0'), ('127.0.0.1', 0))
        self.assertEqual(config_module.parse_bind_address('[::1]:8080'), ('::1', 8080))

    def test_invalid(self):
        for addr in ('8081', 'localhost', ':99999', 'host:port'):
            with self.subTest(addr=addr):
                with self.assertRaises(ValueError):
                    config_module.parse_bind_address(addr)


class TestElectionNamespace(ConfigTestCase):
    """Test election namespace resolution order."""

    def test_explicit_namespace_wins(self):
        self.assertEqual(config_module.resolve_election_namespace('explicit'), 'explicit')

    def test_falls_back_to_pod_namespace(self):
        self.assertEqual(config_module.resolve_election_namespace(''), 'ingress-system')

    def test_falls_back_to_service_account_file(self):
        os.environ.pop('POD_NAMESPACE')
        with tempfile.NamedTemporaryFile('w', suffix='namespace', delete=False) as f:
            f.write('from-file\n')
        self.addCleanup(os.unlink, f.name)
        with patch.object(config_module, 'SERVICE_ACCOUNT_NAMESPACE_FILE', f.name):
            self.assertEqual(config_module.resolve_election_namespace(''), 'from-file')

    def test_empty_when_nothing_available(self):
        os.environ.pop('POD_NAMESPACE')
        with patch.object(config_module, 'SERVICE_ACCOUNT_NAMESPACE_FILE', '/nonexistent/namespace'):
            self.assertEqual(config_module.resolve_election_namespace(''), '')


class TestConfigValidation(ConfigTestCase):
    """Test validate_configuration and create_config."""

    def test_defaults_are_valid(self):
        self.assertEqual(config_module.validate_configuration(self.load()), [])

    def test_out_of_range_value(self):
        os.environ['RECONCILE_WORKERS'] = '500'
        errors = config_module.validate_configuration(self.load())
        self.assertTrue(any('RECONCILE_WORKERS' in e for e in errors))

    def test_non_numeric_value_reported(self):
        os.environ['LEASE_DURATION_SECONDS'] = 'abc'
        cfg = self.load()
        self.assertEqual(cfg.lease_duration, 15.0)
        errors = config_module.validate_configuration(cfg)
        self.assertIn("LEASE_DURATION_SECONDS must be numeric, got 'abc'", errors)

    def test_integer_setting_rejects_fraction(self):
        os.environ['RECONCILE_WORKERS'] = '2.5'
        cfg = self.load()
        self.assertEqual(cfg.reconcile_workers, 1)
        errors = config_module.validate_configuration(cfg)
        self.assertIn("RECONCILE_WORKERS must be an integer, got '2.5'", errors)

    def test_create_config_rejects_non_numeric(self):
        os.environ['RETRY_PERIOD_SECONDS'] = 'two'
        reload(config_module)
        with self.assertRaises(ConfigError) as cm:
            config_module.create_config()
        self.assertTrue(any('RETRY_PERIOD_SECONDS' in e for e in cm.exception.errors))

    def test_lease_timing_must_be_ordered(self):
        os.environ['LEASE_DURATION_SECONDS'] = '10'
        os.environ['RENEW_DEADLINE_SECONDS'] = '10'
        errors = config_module.validate_configuration(self.load())
        self.assertTrue(any('RENEW_DEADLINE_SECONDS' in e for e in errors))

    def test_lease_timing_ignored_without_election(self):
        os.environ['ENABLE_LEADER_ELECTION'] = 'false'
        os.environ['LEASE_DURATION_SECONDS'] = '10'
        os.environ['RENEW_DEADLINE_SECONDS'] = '10'
        self.assertEqual(config_module.validate_configuration(self.load()), [])

    def test_missing_election_namespace(self):
        os.environ.pop('POD_NAMESPACE')
        cfg = self.load()
        with patch.object(config_module, 'SERVICE_ACCOUNT_NAMESPACE_FILE', '/nonexistent/namespace'):
            errors = config_module.validate_configuration(cfg)
        self.assertTrue(any('ELECTION_NAMESPACE' in e for e in errors))

    def test_invalid_bind_address(self):
        os.environ['METRICS_BIND_ADDRESS'] = 'not-an-address'
        errors = config_module.validate_configuration(self.load())
        self.assertTrue(any('METRICS_BIND_ADDRESS' in e for e in errors))

    def test_missing_kubeconfig_is_invalid_connection_descriptor(self):
        os.environ['KUBECONFIG'] = '/nonexistent/kubeconfig'
        errors = config_module.validate_configuration(self.load())
        self.assertTrue(any(e.startswith('invalid connection descriptor') for e in errors))

    def test_api_server_must_be_url(self):
        os.environ['APISERVER_HOST'] = 'kube.example:6443'
        errors = config_module.validate_configuration(self.load())
        self.assertTrue(any('APISERVER_HOST' in e for e in errors))

    def test_empty_scheme_is_invalid(self):
        cfg = config_module.Config(scheme=Scheme())
        errors = config_module.validate_configuration(cfg)
        self.assertTrue(any(e.startswith('invalid scheme') for e in errors))

    def test_create_config_raises_with_all_errors(self):
        os.environ['KUBECONFIG'] = '/nonexistent/kubeconfig'
        os.environ['METRICS_BIND_ADDRESS'] = 'bad'
        reload(config_module)
        with self.assertRaises(ConfigError) as cm:
            config_module.create_config()
        self.assertEqual(len(cm.exception.errors), 2)

    def test_create_config_success(self):
        reload(config_module)
        cfg = config_module.create_config()
        self.assertEqual(cfg.resolved_election_namespace, 'ingress-system')


if __name__ == '__main__':
    unittest.main()
