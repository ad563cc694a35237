import itertools
import json
import logging
from contextlib import contextmanager
from threading import RLock
from typing import Any, Iterable, Mapping, Optional

from psycopg2 import sql
from psycopg2.pool import ThreadedConnectionPool

from pgcompose.proc import CallStyle, proc_named_sql
from pgcompose.schema import SchemaCatalog
from pgcompose.tokens import to_pyformat
from pgcompose.upsert import UpsertBuilder

logger = logging.getLogger(__name__)


def bind_params(query: str, args: Optional[Iterable] = None) -> tuple[str, Optional[dict]]:
	"""
	Translate ``$n`` SQL and its positional args into psycopg2's pyformat style.
	Without args the text is passed through untouched (psycopg2 does no % parsing then).
	"""
	args = list(args or [])
	if not args:
		return query, None
	return to_pyformat(query), {f"p{i}": value for i, value in enumerate(args, start=1)}


class _QueryHelpers:
	"""
	Read and write helpers shared by the client and its transactions.
	Subclasses provide ``execute_query``, ``identity`` and ``catalog``.
	"""

	catalog: SchemaCatalog

	def execute_query(self, query, args: Optional[Iterable] = None) -> list[dict] | None:
		raise NotImplementedError

	def _first_value(self, query, args: Optional[Iterable] = None) -> Any:
		rows = self.execute_query(query, args)
		if not rows:
			return None
		return next(iter(rows[0].values()), None)

	def get_json(self, query, args: Optional[Iterable] = None) -> Any:
		"""
		Decode the first column of the first row as JSON. No row or NULL gives None.
		"""
		value = self._first_value(query, args)
		if value is None:
			return None
		if isinstance(value, (bytes, bytearray, memoryview)):
			value = bytes(value).decode("utf-8")
		if isinstance(value, str):
			if not value:
				return None
			return json.loads(value)
		# json/jsonb columns arrive already decoded
		return value

	def get_int(self, query, args: Optional[Iterable] = None) -> int:
		value = self._first_value(query, args)
		return 0 if value is None else int(value)

	def get_string(self, query, args: Optional[Iterable] = None) -> str:
		value = self._first_value(query, args)
		return "" if value is None else str(value)

	# ---------- Stored procedures ----------
	def proc_named(self, routine: str, params: Mapping[str, Any]) -> list[dict] | None:
		query, values = proc_named_sql(routine, params)
		return self.execute_query(query, values)

	def proc_named_json(self, routine: str, params: Mapping[str, Any]) -> Any:
		query, values = proc_named_sql(routine, params, CallStyle.SELECT)
		return self.get_json(query, values)

	def proc_named_string(self, routine: str, params: Mapping[str, Any]) -> str:
		query, values = proc_named_sql(routine, params, CallStyle.SELECT)
		return self.get_string(query, values)

	# ---------- Schema-driven writes ----------
	def upsert_builder(self, table: str) -> UpsertBuilder:
		return UpsertBuilder.for_table(self.catalog, self, table)

	def insert(self, table: str, row: Any) -> list[dict] | None:
		query, values = self.upsert_builder(table).insert_sql(row)
		return self.execute_query(query, values)

	def update(self, table: str, row: Any, pkey: Any, *only: str) -> list[dict] | None:
		query, values = self.upsert_builder(table).update_sql(row, pkey, *only)
		return self.execute_query(query, values)


class PSQLClient(_QueryHelpers):
	"""
	Thread-safe PostgreSQL client with a connection pool; the execution side of
	the statement, call and upsert builders.

	Create directly:
		client = PSQLClient(database="app", user="postgres", password="...", host="localhost", port=5432)

	Or reuse an existing pool by connection parameters via the cache:
		client = PSQLClient.get(database="app", user="postgres", host="localhost")

	Queries use ``$n`` placeholders, the form every builder renders:
		client.execute_query(*select("*").from_("users").where("id = $1", 7).render())

	Call `close()` when you're done with a specific client instance, or `PSQLClient.closeall()` to close all cached pools.
	"""

	_cache: dict[tuple, "PSQLClient"] = {}
	_cache_lock = RLock()

	@staticmethod
	def _freeze_conn_kwargs(conn_kwargs: dict[str, Any]) -> tuple[tuple[str, Any], ...] | None:
		"""
		Build a deterministic, hashable representation of extra connect kwargs.
		"""
		if not conn_kwargs:
			return None
		frozen: list[tuple[str, Any]] = []
		for key, value in sorted(conn_kwargs.items()):
			try:
				hash(value)
				frozen.append((key, value))
			except TypeError:
				# repr for non-hashable kwargs (e.g., dict/list options)
				frozen.append((key, repr(value)))
		return tuple(frozen)

	@classmethod
	def get(
		cls,
		*,
		database: str = "postgres",
		user: str = "postgres",
		password: Optional[str] = None,
		host: Optional[str] = None,
		port: Optional[int] = None,
		minconn: int = 1,
		maxconn: int = 10,
		catalog: Optional[SchemaCatalog] = None,
		**conn_kwargs
	) -> "PSQLClient":
		"""
		Return a cached client for the same connection parameters, creating it if needed.
		``catalog`` only applies when a new client is created.
		"""
		key = (
			host, port, database, user, password,
			cls._freeze_conn_kwargs(conn_kwargs),
			minconn, maxconn
		)
		with cls._cache_lock:
			client = cls._cache.get(key)
			if client is None or client._closed:
				client = cls(
					database=database, user=user, password=password,
					host=host, port=port, minconn=minconn, maxconn=maxconn,
					catalog=catalog, **conn_kwargs
				)
				client._cache_key = key
				cls._cache[key] = client
				logger.debug("Created new cached PSQLClient for %r", client)
			else:
				logger.debug("Reusing cached PSQLClient for %r", client)
			return client

	@classmethod
	def closeall(cls) -> None:
		"""Close all cached connection pools and clear the cache."""
		with cls._cache_lock:
			clients = list(cls._cache.values())
			cls._cache.clear()
		for client in clients:
			try:
				client.close()
			except Exception:
				logger.exception("Error closing pooled client")

	def __init__(
		self,
		*,
		database: str = "postgres",
		user: str = "postgres",
		password: Optional[str] = None,
		host: Optional[str] = None,
		port: Optional[int] = None,
		minconn: int = 1,
		maxconn: int = 10,
		catalog: Optional[SchemaCatalog] = None,
		**conn_kwargs
	):
		self.database = database
		self.user = user
		self.host = host
		self.port = port
		self.catalog = catalog if catalog is not None else SchemaCatalog()
		self._closed = False
		self._state_lock = RLock()
		self._cache_key: tuple | None = None
		self._savepoints = itertools.count(1)
		self._conn_kwargs = dict(conn_kwargs)
		if password is not None:
			self._conn_kwargs["password"] = password
		if host is not None:
			self._conn_kwargs["host"] = host
		if port is not None:
			self._conn_kwargs["port"] = port

		logger.debug("Creating PSQLClient for %s@%s:%s/%s", user, host or "", port or "", database)

		self.pool = ThreadedConnectionPool(
			minconn, maxconn,
			database=self.database,
			user=self.user,
			**self._conn_kwargs
		)

	def __repr__(self) -> str:
		host = self.host or ""
		port = f":{self.port}" if self.port else ""
		return f"<PSQLClient {self.user}@{host}{port}/{self.database} pool={getattr(self.pool, 'minconn', '?')}-{getattr(self.pool, 'maxconn', '?')}>"

	@property
	def identity(self) -> tuple:
		"""Which database this client talks to; keys the schema catalog."""
		return (self.host, self.port, self.database, self.user)

	# ---------- Pool plumbing ----------
	def close(self) -> None:
		"""Close this client's pool."""
		with self._state_lock:
			if self._closed:
				return
			self._closed = True
		try:
			self.pool.closeall()
		except Exception:
			logger.exception("Error closing connection pool")
		finally:
			cache_key = self._cache_key
			if cache_key is not None:
				with self.__class__._cache_lock:
					if self.__class__._cache.get(cache_key) is self:
						self.__class__._cache.pop(cache_key, None)

	def _get_conn(self):
		with self._state_lock:
			if self._closed:
				raise RuntimeError("PSQLClient is closed.")
		return self.pool.getconn()

	def _put_conn(self, conn):
		try:
			self.pool.putconn(conn)
		except Exception:
			# the pool may already be closed while a connection is returned
			with self._state_lock:
				if not self._closed:
					raise

	def _next_savepoint(self) -> str:
		return f"savepoint{next(self._savepoints)}"

	class _Transaction(_QueryHelpers):
		"""
		Transaction-scoped executor that reuses one checked-out connection.
		``begin()`` opens a nested level backed by a savepoint.
		"""
		def __init__(self, client: "PSQLClient", conn, savepoint: Optional[str] = None):
			self._client = client
			self._conn = conn
			self.savepoint = savepoint

		@property
		def identity(self) -> tuple:
			return self._client.identity

		@property
		def catalog(self) -> SchemaCatalog:
			return self._client.catalog

		def execute_query(self, query, args: Optional[Iterable] = None) -> list[dict] | None:
			query_text, params = bind_params(self._client._normalize_query(self._conn, query), args)
			logger.debug("EXEC: %s %s", query_text, params)
			with self._conn.cursor() as cur:
				cur.execute(query_text, params)
				return self._client._rows_from_cursor(cur)

		@contextmanager
		def begin(self):
			"""
			Nested transaction:
				with client.transaction() as tx:
					with tx.begin() as inner:
						inner.execute_query(...)  # rolled back alone on error
			"""
			name = self._client._next_savepoint()
			self.execute_query(sql.SQL("SAVEPOINT {}").format(sql.SQL(name)))
			logger.debug("Opened %s", name)
			try:
				yield self.__class__(self._client, self._conn, name)
			except Exception:
				self.execute_query(sql.SQL("ROLLBACK TO SAVEPOINT {}").format(sql.SQL(name)))
				logger.debug("Rolled back %s", name)
				raise
			self.execute_query(sql.SQL("RELEASE SAVEPOINT {}").format(sql.SQL(name)))
			logger.debug("Released %s", name)

	@contextmanager
	def transaction(self):
		"""
		Provide a transaction context that commits once on success and rolls back on error.

		Usage:
			with client.transaction() as tx:
				tx.insert("users", {"email": "t@me.com"})
				tx.update("users", {"name": "foo"}, user_id)
		"""
		conn = self._get_conn()
		prev_autocommit = getattr(conn, "autocommit", False)
		try:
			conn.autocommit = False
			yield self._Transaction(self, conn)
			conn.commit()
		except Exception:
			conn.rollback()
			raise
		finally:
			conn.autocommit = prev_autocommit
			self._put_conn(conn)

	# ---------- Execution helpers ----------
	@staticmethod
	def _normalize_query(conn, query) -> str:
		if isinstance(query, str):
			return query
		return query.as_string(conn)

	@staticmethod
	def _rows_from_cursor(cur) -> list[dict] | None:
		if cur.description is None:
			return None
		colnames = [d[0] for d in cur.description]
		rows = cur.fetchall()
		return [dict(zip(colnames, r)) for r in rows]

	def _execute_on_conn(self, conn, query, args: Optional[Iterable] = None) -> list[dict] | None:
		"""
		Run one statement on an acquired connection; commit on success, roll back on error.
		"""
		try:
			query_text, params = bind_params(self._normalize_query(conn, query), args)
			logger.debug("EXEC: %s %s", query_text, params)
			with conn.cursor() as cur:
				cur.execute(query_text, params)
				rows = self._rows_from_cursor(cur)
			conn.commit()
			return rows
		except Exception:
			conn.rollback()
			raise

	def execute_query(self, query, args: Optional[Iterable] = None) -> list[dict] | None:
		"""
		Execute SQL (``$n`` string or psycopg2.sql Composable) with positional args.
		Returns list[dict] for result sets, otherwise None.
		"""
		conn = self._get_conn()
		try:
			return self._execute_on_conn(conn, query, args)
		finally:
			self._put_conn(conn)
