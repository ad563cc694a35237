import itertools
import sys
import unittest
from pathlib import Path
from threading import RLock
from unittest import mock

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from psycopg2 import sql  # noqa: E402

from pgcompose.client import PSQLClient, bind_params  # noqa: E402
from pgcompose.schema import SchemaCatalog  # noqa: E402
from pgcompose.statement import select  # noqa: E402
from pgcompose.upsert import UnsupportedSchemaError  # noqa: E402


class FakeCursor:
    def __init__(self, *, description=None, rows=None, raise_on_execute=None):
        self.description = description
        self._rows = list(rows or [])
        self.raise_on_execute = raise_on_execute
        self.executed = []

    def execute(self, query, params):
        self.executed.append((query, params))
        if self.raise_on_execute is not None:
            raise self.raise_on_execute

    def fetchall(self):
        return list(self._rows)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeConnection:
    def __init__(self, cursor=None):
        self.autocommit = False
        self._cursor = cursor or FakeCursor()
        self.commit_calls = 0
        self.rollback_calls = 0

    def cursor(self):
        return self._cursor

    def commit(self):
        self.commit_calls += 1

    def rollback(self):
        self.rollback_calls += 1


class ScriptedCursor(FakeCursor):
    """Answers catalog queries with ``catalog_rows`` and everything else with ``rows``."""

    def __init__(self, *, catalog_rows=(), rows=None, description=None):
        self._current_description = None
        super().__init__(description=description, rows=rows)
        self.catalog_rows = list(catalog_rows)
        self._current = []

    def execute(self, query, params):
        super().execute(query, params)
        if "pg_attribute" in query:
            self._current_description = [(k,) for k in self.catalog_rows[0]] if self.catalog_rows else [("table_name",)]
            self._current = [tuple(r.values()) for r in self.catalog_rows]
        else:
            self._current_description = self._description
            self._current = list(self._rows)

    @property
    def description(self):
        return self._current_description

    @description.setter
    def description(self, value):
        self._description = value

    def fetchall(self):
        return list(self._current)


class RecordingPool:
    instances = []

    def __init__(self, minconn, maxconn, **kwargs):
        self.minconn = minconn
        self.maxconn = maxconn
        self.kwargs = dict(kwargs)
        self.closeall_calls = 0
        self.putconn_calls = []
        self.raise_on_put = None
        self._conn = FakeConnection()
        self.__class__.instances.append(self)

    def getconn(self):
        return self._conn

    def putconn(self, conn):
        self.putconn_calls.append(conn)
        if self.raise_on_put is not None:
            raise self.raise_on_put

    def closeall(self):
        self.closeall_calls += 1


def make_client(pool=None, catalog=None) -> PSQLClient:
    client = object.__new__(PSQLClient)
    client.database = "postgres"
    client.user = "postgres"
    client.host = None
    client.port = None
    client.catalog = catalog or SchemaCatalog()
    client._closed = False
    client._state_lock = RLock()
    client._cache_key = None
    client._savepoints = itertools.count(1)
    client._conn_kwargs = {}
    client.pool = pool or mock.Mock(minconn=1, maxconn=10)
    return client


def client_with_cursor(cursor) -> tuple[PSQLClient, FakeConnection]:
    conn = FakeConnection(cursor)
    pool = mock.Mock()
    pool.getconn.return_value = conn
    return make_client(pool=pool), conn


ADS_CATALOG = [
    {"table_name": "ads", "column_name": "id", "type_name": "uuid",
     "not_null": True, "pkey": True, "default_expr": "gen_random_uuid()"},
    {"table_name": "ads", "column_name": "ownlocal_id", "type_name": "integer",
     "not_null": False, "pkey": False, "default_expr": ""},
]


class PSQLClientTestCase(unittest.TestCase):
    def tearDown(self):
        PSQLClient.closeall()
        RecordingPool.instances.clear()


class TestCacheAndLifecycle(PSQLClientTestCase):
    def test_freeze_conn_kwargs(self):
        frozen = PSQLClient._freeze_conn_kwargs({"b": 2, "a": [1, 2]})
        self.assertEqual(frozen, (("a", "[1, 2]"), ("b", 2)))
        self.assertIsNone(PSQLClient._freeze_conn_kwargs({}))

    def test_cache_reuse_close_and_closeall(self):
        with mock.patch("pgcompose.client.ThreadedConnectionPool", RecordingPool):
            first = PSQLClient.get(database="db", user="u")
            second = PSQLClient.get(database="db", user="u")
            self.assertIs(first, second)

            cache_key = first._cache_key
            first.close()
            first.close()
            self.assertNotIn(cache_key, PSQLClient._cache)
            self.assertEqual(first.pool.closeall_calls, 1)

            third = PSQLClient.get(database="db", user="u")
            self.assertIsNot(first, third)
            PSQLClient.closeall()
            self.assertEqual(PSQLClient._cache, {})

    def test_pool_kwargs_repr_and_identity(self):
        with mock.patch("pgcompose.client.ThreadedConnectionPool", RecordingPool):
            client = PSQLClient.get(
                database="mydb", user="alice", password="pw", host="db.local", port=5432,
                minconn=2, maxconn=8, sslmode="require",
            )
        self.assertEqual(repr(client), "<PSQLClient alice@db.local:5432/mydb pool=2-8>")
        self.assertEqual(client.identity, ("db.local", 5432, "mydb", "alice"))
        self.assertEqual(client.pool.kwargs, {
            "database": "mydb", "user": "alice", "password": "pw",
            "host": "db.local", "port": 5432, "sslmode": "require",
        })

    def test_catalog_is_owned_or_shared(self):
        shared = SchemaCatalog(namespace="app")
        with mock.patch("pgcompose.client.ThreadedConnectionPool", RecordingPool):
            a = PSQLClient(database="a")
            b = PSQLClient(database="b", catalog=shared)
        self.assertIsInstance(a.catalog, SchemaCatalog)
        self.assertIs(b.catalog, shared)

    def test_get_conn_and_put_conn(self):
        closed_client = make_client(pool=RecordingPool(1, 2))
        closed_client._closed = True
        with self.assertRaisesRegex(RuntimeError, "closed"):
            closed_client._get_conn()

        pool = RecordingPool(1, 2)
        pool.raise_on_put = RuntimeError("put failed")
        client = make_client(pool=pool)
        with self.assertRaisesRegex(RuntimeError, "put failed"):
            client._put_conn(object())

        client._closed = True
        client._put_conn(object())


class TestBinding(unittest.TestCase):
    def test_bind_params(self):
        self.assertEqual(
            bind_params("SELECT * FROM t WHERE a = $1 AND b LIKE 'x%' AND c = $2", ["A", "C"]),
            ("SELECT * FROM t WHERE a = %(p1)s AND b LIKE 'x%%' AND c = %(p2)s", {"p1": "A", "p2": "C"}),
        )

    def test_no_args_passes_through(self):
        self.assertEqual(bind_params("SELECT '100%'", None), ("SELECT '100%'", None))
        self.assertEqual(bind_params("SELECT 1", []), ("SELECT 1", None))


class TestExecution(PSQLClientTestCase):
    def test_rows_from_cursor(self):
        self.assertIsNone(PSQLClient._rows_from_cursor(FakeCursor(description=None, rows=[(1,)])))
        cur = FakeCursor(description=[("id",), ("name",)], rows=[(1, "A"), (2, "B")])
        self.assertEqual(
            PSQLClient._rows_from_cursor(cur),
            [{"id": 1, "name": "A"}, {"id": 2, "name": "B"}],
        )

    def test_normalize_query(self):
        client = make_client()
        self.assertEqual(client._normalize_query(None, "SELECT 1"), "SELECT 1")
        self.assertEqual(client._normalize_query(None, sql.SQL("SELECT 2")), "SELECT 2")

    def test_execute_on_conn_commit_and_rollback(self):
        client = make_client()

        cur_ok = FakeCursor(description=[("id",)], rows=[(1,)])
        conn_ok = FakeConnection(cur_ok)
        self.assertEqual(client._execute_on_conn(conn_ok, "SELECT $1", [7]), [{"id": 1}])
        self.assertEqual(cur_ok.executed, [("SELECT %(p1)s", {"p1": 7})])
        self.assertEqual((conn_ok.commit_calls, conn_ok.rollback_calls), (1, 0))

        conn_fail = FakeConnection(FakeCursor(raise_on_execute=RuntimeError("boom")))
        with self.assertRaisesRegex(RuntimeError, "boom"):
            client._execute_on_conn(conn_fail, "SELECT 1", [7])
        self.assertEqual((conn_fail.commit_calls, conn_fail.rollback_calls), (0, 1))

    def test_execute_query_returns_connection(self):
        cur = FakeCursor(description=[("ok",)], rows=[(1,)])
        client, conn = client_with_cursor(cur)
        self.assertEqual(client.execute_query("SELECT 1"), [{"ok": 1}])
        client.pool.putconn.assert_called_once_with(conn)

    def test_builder_output_executes(self):
        cur = FakeCursor(description=[("id",)], rows=[(3,)])
        client, _ = client_with_cursor(cur)
        stmt = select("id").from_("users").where("name = $1", "troy").where("note <> '$1'")
        client.execute_query(*stmt.render())
        self.assertEqual(cur.executed, [(
            "SELECT id\nFROM users\nWHERE (name = %(p1)s) AND (note <> '$1')",
            {"p1": "troy"},
        )])


class TestReadHelpers(unittest.TestCase):
    def test_get_json(self):
        client = make_client()
        with mock.patch.object(client, "execute_query", return_value=[{"j": '{"a": 1}'}]):
            self.assertEqual(client.get_json("SELECT j"), {"a": 1})
        with mock.patch.object(client, "execute_query", return_value=[{"j": {"a": 2}}]):
            self.assertEqual(client.get_json("SELECT j"), {"a": 2})
        with mock.patch.object(client, "execute_query", return_value=[{"j": b"[1]"}]):
            self.assertEqual(client.get_json("SELECT j"), [1])
        for empty in ([], None, [{"j": None}], [{"j": ""}]):
            with mock.patch.object(client, "execute_query", return_value=empty):
                self.assertIsNone(client.get_json("SELECT j"))

    def test_get_int_and_get_string(self):
        client = make_client()
        with mock.patch.object(client, "execute_query", return_value=[{"n": 42}]):
            self.assertEqual(client.get_int("SELECT n"), 42)
        with mock.patch.object(client, "execute_query", return_value=[]):
            self.assertEqual(client.get_int("SELECT n"), 0)
            self.assertEqual(client.get_string("SELECT s"), "")
        with mock.patch.object(client, "execute_query", return_value=[{"s": None}]):
            self.assertEqual(client.get_string("SELECT s"), "")
        with mock.patch.object(client, "execute_query", return_value=[{"s": "Troy"}]) as execute:
            self.assertEqual(client.get_string("select name from users where id=$1", ["u"]), "Troy")
        execute.assert_called_once_with("select name from users where id=$1", ["u"])

    def test_proc_named_helpers(self):
        client = make_client()
        with mock.patch.object(client, "execute_query", return_value=[{"r": '{"ok": true}'}]) as execute:
            out = client.proc_named_json("users.get", {"id": 4, "email": ""})
        self.assertEqual(out, {"ok": True})
        execute.assert_called_once_with("SELECT users.get(id:=$1)", [4])

        with mock.patch.object(client, "execute_query", return_value=[{"r": "done"}]) as execute:
            self.assertEqual(client.proc_named_string("jobs.run", {"b": 2, "a": 1}), "done")
        execute.assert_called_once_with("SELECT jobs.run(a:=$1,b:=$2)", [1, 2])

        with mock.patch.object(client, "execute_query", return_value=None) as execute:
            self.assertIsNone(client.proc_named("jobs.tick", {}))
        execute.assert_called_once_with("jobs.tick()", [])


class TestSchemaDrivenWrites(unittest.TestCase):
    def test_insert_and_update(self):
        cur = ScriptedCursor(catalog_rows=ADS_CATALOG)
        client, _ = client_with_cursor(cur)

        client.insert("ads", {"ownlocal_id": 1})
        client.update("ads", {"ownlocal_id": 2}, "theuuid")

        catalog_calls = [q for q, _ in cur.executed if "pg_attribute" in q]
        self.assertEqual(len(catalog_calls), 1)
        self.assertEqual(cur.executed[1], (
            "INSERT INTO ads(ownlocal_id) VALUES(nullif(%(p1)s,0)::integer)",
            {"p1": 1},
        ))
        self.assertEqual(cur.executed[2], (
            "UPDATE ads SET ownlocal_id = nullif(%(p1)s,0)::integer WHERE id=%(p2)s",
            {"p1": 2, "p2": "theuuid"},
        ))

    def test_update_compound_key_raises_before_executing(self):
        rows = [
            {"table_name": "m", "column_name": "a", "type_name": "integer",
             "not_null": True, "pkey": True, "default_expr": ""},
            {"table_name": "m", "column_name": "b", "type_name": "integer",
             "not_null": True, "pkey": True, "default_expr": ""},
        ]
        cur = ScriptedCursor(catalog_rows=rows)
        client, _ = client_with_cursor(cur)
        with self.assertRaises(UnsupportedSchemaError):
            client.update("m", {"a": 1}, 1)
        self.assertEqual(len(cur.executed), 1)


class TestTransactions(unittest.TestCase):
    def test_commit_on_success(self):
        cur = FakeCursor()
        client, conn = client_with_cursor(cur)
        conn.autocommit = True
        with client.transaction() as tx:
            tx.execute_query("UPDATE users SET name = $1", ["foo"])
            self.assertFalse(conn.autocommit)
        self.assertEqual((conn.commit_calls, conn.rollback_calls), (1, 0))
        self.assertTrue(conn.autocommit)
        client.pool.putconn.assert_called_once_with(conn)

    def test_rollback_on_error(self):
        client, conn = client_with_cursor(FakeCursor())
        with self.assertRaisesRegex(ValueError, "nope"):
            with client.transaction():
                raise ValueError("nope")
        self.assertEqual((conn.commit_calls, conn.rollback_calls), (0, 1))

    def test_nested_savepoints(self):
        cur = FakeCursor()
        client, conn = client_with_cursor(cur)
        with client.transaction() as tx:
            with tx.begin() as inner:
                self.assertEqual(inner.savepoint, "savepoint1")
                inner.execute_query("UPDATE users SET name = $1", ["fooInner"])
            with self.assertRaisesRegex(RuntimeError, "inner failed"):
                with tx.begin():
                    raise RuntimeError("inner failed")
            tx.execute_query("SELECT 1")

        statements = [q for q, _ in cur.executed]
        self.assertEqual(statements, [
            "SAVEPOINT savepoint1",
            "UPDATE users SET name = %(p1)s",
            "RELEASE SAVEPOINT savepoint1",
            "SAVEPOINT savepoint2",
            "ROLLBACK TO SAVEPOINT savepoint2",
            "SELECT 1",
        ])
        self.assertEqual((conn.commit_calls, conn.rollback_calls), (1, 0))

    def test_transaction_helpers_share_client_catalog(self):
        cur = ScriptedCursor(catalog_rows=ADS_CATALOG)
        client, _ = client_with_cursor(cur)
        with client.transaction() as tx:
            self.assertIs(tx.catalog, client.catalog)
            self.assertEqual(tx.identity, client.identity)
            tx.insert("ads", {"id": "x"})
        self.assertEqual(cur.executed[-1], (
            "INSERT INTO ads(id) VALUES(coalesce(nullif(%(p1)s,'')::uuid,gen_random_uuid()))",
            {"p1": "x"},
        ))
        # schema fetched inside the transaction is reused outside it
        client.insert("ads", {"id": "y"})
        self.assertEqual(len([q for q, _ in cur.executed if "pg_attribute" in q]), 1)


if __name__ == "__main__":
    unittest.main()
