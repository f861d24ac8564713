"""
Tests for configuration, the session manager and error classification.
"""

import threading
import time
import unittest
from unittest.mock import MagicMock, patch

import ldap
from django.core.exceptions import ImproperlyConfigured

from ldapquery.config import LdapConfig
from ldapquery.exceptions import (
    AuthError,
    ConfigError,
    LdapConnectionError,
    NotFoundError,
    SearchError,
    StaleConnectionError,
    classify_error,
)
from ldapquery.session import CACHE_KEY, SessionManager

from . import LDAP_SERVERS


def server_down():
    return ldap.SERVER_DOWN({"result": -1, "desc": "Can't contact LDAP server"})


class TestLdapConfig(unittest.TestCase):

    def test_from_settings(self):
        config = LdapConfig.from_settings("default")
        self.assertEqual(config.server_url, "ldap://localhost:389")
        self.assertEqual(config.basedn, "dc=example,dc=com")
        self.assertEqual(config.effective_page_size, 1000)
        config.validate()

    def test_url_from_host(self):
        config = LdapConfig.from_settings("tls_server")
        self.assertEqual(config.server_url, "ldaps://dc1.example.com:636")
        config = LdapConfig.from_dict({"host": "dc1", "port": 10389})
        self.assertEqual(config.server_url, "ldap://dc1:10389")

    def test_host_name(self):
        self.assertEqual(LdapConfig.from_settings("default").host_name, "localhost")
        self.assertEqual(LdapConfig.from_settings("tls_server").host_name, "dc1.example.com")
        self.assertEqual(LdapConfig().host_name, "")

    def test_unknown_server(self):
        with self.assertRaises(ConfigError) as cm:
            LdapConfig.from_settings("nope")
        self.assertIsInstance(cm.exception, ImproperlyConfigured)

    def test_missing_fields_are_named(self):
        base = dict(LDAP_SERVERS["default"])
        for key in ("user", "password", "basedn"):
            with self.subTest(key=key):
                data = dict(base)
                data[key] = ""
                with self.assertRaises(ConfigError) as cm:
                    LdapConfig.from_dict(data).validate()
                self.assertIn(f"'{key}'", str(cm.exception))
                self.assertTrue(str(cm.exception).startswith("config validation"))
        data = dict(base)
        del data["url"]
        with self.assertRaises(ConfigError) as cm:
            LdapConfig.from_dict(data).validate()
        self.assertIn("'host'", str(cm.exception))

    def test_tls_needs_explicit_verify_policy(self):
        data = dict(LDAP_SERVERS["tls_server"])
        del data["tls_insecure_skip_verify"]
        with self.assertRaises(ConfigError) as cm:
            LdapConfig.from_dict(data).validate()
        self.assertIn("tls_insecure_skip_verify", str(cm.exception))


class TestClassifyError(unittest.TestCase):

    def test_server_down(self):
        self.assertIsInstance(classify_error(server_down(), "search"), StaleConnectionError)
        error = classify_error(server_down(), "dial")
        self.assertIsInstance(error, LdapConnectionError)
        self.assertNotIsInstance(error, StaleConnectionError)

    def test_network_error_code(self):
        exc = ldap.LDAPError({"result": 200, "desc": "Network Error"})
        error = classify_error(exc, "search")
        self.assertIsInstance(error, StaleConnectionError)
        self.assertEqual(error.result, 200)

    def test_bind_rejected(self):
        exc = ldap.INVALID_CREDENTIALS({"result": 49, "desc": "Invalid credentials"})
        error = classify_error(exc, "bind")
        self.assertIsInstance(error, AuthError)
        self.assertEqual(str(error), "bind: bind rejected: Invalid credentials")

    def test_search_failures(self):
        error = classify_error(ldap.FILTER_ERROR("Bad search filter"), "search")
        self.assertIsInstance(error, SearchError)
        self.assertIsNone(error.result)
        error = classify_error(
            ldap.NO_SUCH_OBJECT({"result": 32, "desc": "No such object"}), "search"
        )
        self.assertIsInstance(error, NotFoundError)


class SessionManagerTestCase(unittest.TestCase):

    def setUp(self):
        self.config = LdapConfig.from_settings("default")
        self.sessions = SessionManager(self.config)
        self.connections = []
        self.patcher = patch("ldapquery.ldap.initialize", side_effect=self._initialize)
        self.initialize = self.patcher.start()

    def tearDown(self):
        self.patcher.stop()

    def _initialize(self, url):
        connection = MagicMock(name=f"connection{len(self.connections)}")
        self.connections.append(connection)
        return connection


class TestAcquire(SessionManagerTestCase):

    def test_acquire_dials_and_binds_once(self):
        session = self.sessions.acquire()
        self.assertIs(self.sessions.acquire(), session)
        self.initialize.assert_called_once_with("ldap://localhost:389")
        session.connection.simple_bind_s.assert_called_once_with(
            "cn=admin,dc=example,dc=com", "admin"
        )
        self.assertTrue(session.bound)
        self.assertTrue(self.sessions.has_session())

    def test_config_checked_before_dialing(self):
        self.config.password = ""
        with self.assertRaises(ConfigError):
            self.sessions.acquire()
        self.initialize.assert_not_called()

    def test_bind_rejected(self):
        def initialize(url):
            connection = MagicMock()
            connection.simple_bind_s.side_effect = ldap.INVALID_CREDENTIALS(
                {"result": 49, "desc": "Invalid credentials"}
            )
            return connection

        self.initialize.side_effect = initialize
        with self.assertRaises(AuthError):
            self.sessions.acquire()
        self.assertFalse(self.sessions.has_session())

    def test_server_unreachable(self):
        def initialize(url):
            connection = MagicMock()
            connection.simple_bind_s.side_effect = server_down()
            return connection

        self.initialize.side_effect = initialize
        with self.assertRaises(LdapConnectionError) as cm:
            self.sessions.acquire()
        self.assertEqual(cm.exception.phase, "dial")

    def test_tls_options(self):
        self.sessions = SessionManager(LdapConfig.from_settings("tls_server"))
        session = self.sessions.acquire()
        self.initialize.assert_called_once_with("ldaps://dc1.example.com:636")
        session.connection.set_option.assert_any_call(
            ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND
        )
        self.assertEqual(
            repr(session),
            "<LdapSession ldaps://dc1.example.com:636 as cn=admin,dc=example,dc=com (bound, tls)>",
        )

    def test_invalidate(self):
        session = self.sessions.acquire()
        self.sessions.invalidate()
        self.assertFalse(self.sessions.has_session())
        session.connection.unbind_s.assert_called_once()
        self.assertIsNot(self.sessions.acquire(), session)

    def test_invalidate_ignores_an_already_replaced_session(self):
        old = self.sessions.acquire()
        new = self.sessions.reconnect(old)
        self.sessions.invalidate(old)
        self.assertIs(self.sessions._sessions[CACHE_KEY], new)

    def test_concurrent_acquire_dials_once(self):
        def slow_initialize(url):
            time.sleep(0.05)
            return self._initialize(url)

        self.initialize.side_effect = slow_initialize
        barrier = threading.Barrier(4)
        sessions = []

        def worker():
            barrier.wait()
            sessions.append(self.sessions.acquire())

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(self.initialize.call_count, 1)
        self.assertEqual(len({id(s) for s in sessions}), 1)


class TestWithReconnect(SessionManagerTestCase):

    def test_success_uses_cached_connection(self):
        op = MagicMock(return_value="ok")
        self.assertEqual(self.sessions.with_reconnect(op), "ok")
        self.assertEqual(self.sessions.with_reconnect(op), "ok")
        self.assertEqual(self.initialize.call_count, 1)

    def test_stale_connection_is_retried_once(self):
        op = MagicMock(side_effect=[server_down(), "ok"])
        self.assertEqual(self.sessions.with_reconnect(op), "ok")
        self.assertEqual(self.initialize.call_count, 2)
        self.assertEqual(op.call_count, 2)
        # The retry ran against the new connection
        self.assertIs(op.call_args_list[1].args[0], self.connections[1])

    def test_network_error_code_is_retried(self):
        op = MagicMock(
            side_effect=[ldap.LDAPError({"result": 200, "desc": "Network Error"}), "ok"]
        )
        self.assertEqual(self.sessions.with_reconnect(op), "ok")
        self.assertEqual(self.initialize.call_count, 2)

    def test_second_stale_connection_is_terminal(self):
        op = MagicMock(side_effect=[server_down(), server_down(), "never"])
        with self.assertRaises(LdapConnectionError) as cm:
            self.sessions.with_reconnect(op)
        self.assertNotIsInstance(cm.exception, StaleConnectionError)
        self.assertEqual(op.call_count, 2)
        self.assertEqual(self.initialize.call_count, 2)
        self.assertFalse(self.sessions.has_session())

    def test_other_errors_are_not_retried(self):
        op = MagicMock(side_effect=ldap.INSUFFICIENT_ACCESS("Insufficient access"))
        with self.assertRaises(SearchError):
            self.sessions.with_reconnect(op)
        self.assertEqual(op.call_count, 1)
        self.assertEqual(self.initialize.call_count, 1)

    def test_concurrent_reconnects_dial_once(self):
        def slow_initialize(url):
            time.sleep(0.05)
            return self._initialize(url)

        self.initialize.side_effect = slow_initialize
        self.sessions.acquire()
        barrier = threading.Barrier(4)
        results = []

        def op(connection):
            if connection is self.connections[0]:
                raise server_down()
            return "ok"

        def worker():
            barrier.wait()
            results.append(self.sessions.with_reconnect(op))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(results, ["ok"] * 4)
        self.assertEqual(self.initialize.call_count, 2)
        self.assertIs(self.sessions.acquire().connection, self.connections[1])
