from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger
from warden.storage.common import (
    MENU_UPDATABLE,
    PERMISSION_UPDATABLE,
    ROLE_UPDATABLE,
    dedupe_ids,
    ensure_lookup_field,
    filter_updates,
    safe_row_value,
)
from warden.storage.errors import ConstraintViolation
from warden.storage.models import STATUS_ACTIVE, Menu, Permission, Role, User

REQUIRED_TABLES = (
    "app_user",
    "role",
    "permission",
    "menu",
    "user_role",
    "role_permission",
    "menu_permission",
)

SCHEMA_DDL = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT UNIQUE,
        phone TEXT UNIQUE,
        password_hash TEXT NOT NULL,
        nickname TEXT,
        avatar TEXT,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'inactive', 'banned')),
        level INTEGER NOT NULL DEFAULT 0,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        register_ip TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        code TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive')),
        level INTEGER NOT NULL DEFAULT 0,
        is_system BOOLEAN NOT NULL DEFAULT false,
        sort INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS role_code_live_idx ON role (code) WHERE deleted_at IS NULL",
    "CREATE UNIQUE INDEX IF NOT EXISTS role_name_live_idx ON role (name) WHERE deleted_at IS NULL",
    """
    CREATE TABLE IF NOT EXISTS permission (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        code TEXT NOT NULL,
        description TEXT,
        module TEXT NOT NULL,
        action TEXT NOT NULL,
        resource TEXT,
        status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive')),
        level INTEGER NOT NULL DEFAULT 0,
        is_system BOOLEAN NOT NULL DEFAULT false,
        sort INTEGER NOT NULL DEFAULT 0,
        parent_id BIGINT REFERENCES permission(id),
        path TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS permission_code_live_idx ON permission (code) WHERE deleted_at IS NULL",
    "CREATE INDEX IF NOT EXISTS permission_resource_action_idx ON permission (resource, action)",
    """
    CREATE TABLE IF NOT EXISTS menu (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        title TEXT NOT NULL,
        icon TEXT,
        path TEXT NOT NULL,
        component TEXT,
        redirect TEXT,
        type TEXT NOT NULL DEFAULT 'menu' CHECK (type IN ('directory', 'menu', 'button')),
        status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive')),
        hidden BOOLEAN NOT NULL DEFAULT false,
        keep_alive BOOLEAN NOT NULL DEFAULT false,
        affix BOOLEAN NOT NULL DEFAULT false,
        sort INTEGER NOT NULL DEFAULT 0,
        parent_id BIGINT REFERENCES menu(id),
        menu_path TEXT,
        external_link TEXT,
        is_system BOOLEAN NOT NULL DEFAULT false,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS menu_path_live_idx ON menu (path) WHERE deleted_at IS NULL",
    """
    CREATE TABLE IF NOT EXISTS user_role (
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role_id BIGINT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        position INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role_id BIGINT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        permission_id BIGINT NOT NULL REFERENCES permission(id) ON DELETE CASCADE,
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS menu_permission (
        menu_id BIGINT NOT NULL REFERENCES menu(id) ON DELETE CASCADE,
        permission_id BIGINT NOT NULL REFERENCES permission(id) ON DELETE CASCADE,
        PRIMARY KEY (menu_id, permission_id)
    )
    """,
)

# Generic user reads never project password_hash
_USER_COLUMNS = (
    "id, username, email, phone, nickname, avatar, status, level, last_login_at, "
    "last_login_ip, register_ip, created_at, updated_at"
)


def _unique_field(exc: errors.UniqueViolation, candidates: Iterable[str], default: str) -> str:
    """Map a unique-constraint name such as ``app_user_email_key`` to its column."""
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    for candidate in candidates:
        if f"_{candidate}_" in constraint:
            return candidate
    return default


class PostgresStore:
    """Postgres-backed credential store for users, roles, permissions and menus."""

    def __init__(self, dsn: str, *, verify_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create missing tables; used by the bootstrap script."""
        with self._connect() as conn:
            for statement in SCHEMA_DDL:
                conn.execute(statement)
        self.logger.info("postgres_schema_ensured", tables=list(REQUIRED_TABLES))

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/bootstrap_admin.py --init-schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mappers ---------------------------------------------------------

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=int(row["id"]),
            name=row["name"],
            code=row["code"],
            module=row["module"],
            action=row["action"],
            description=row.get("description"),
            resource=row.get("resource"),
            status=safe_row_value(row, "status", STATUS_ACTIVE),
            level=safe_row_value(row, "level", 0),
            is_system=bool(safe_row_value(row, "is_system", False)),
            sort=safe_row_value(row, "sort", 0),
            parent_id=row.get("parent_id"),
            path=row.get("path"),
            created_at=safe_row_value(row, "created_at", datetime.utcnow()),
            updated_at=safe_row_value(row, "updated_at", datetime.utcnow()),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any], permissions: Optional[List[Permission]] = None) -> Role:
        return Role(
            id=int(row["id"]),
            name=row["name"],
            code=row["code"],
            description=row.get("description"),
            status=safe_row_value(row, "status", STATUS_ACTIVE),
            level=safe_row_value(row, "level", 0),
            is_system=bool(safe_row_value(row, "is_system", False)),
            sort=safe_row_value(row, "sort", 0),
            permissions=list(permissions or []),
            created_at=safe_row_value(row, "created_at", datetime.utcnow()),
            updated_at=safe_row_value(row, "updated_at", datetime.utcnow()),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _user_from_row(row: Dict[str, Any], roles: Optional[List[Role]] = None) -> User:
        return User(
            id=int(row["id"]),
            username=row["username"],
            email=row.get("email"),
            phone=row.get("phone"),
            nickname=row.get("nickname"),
            avatar=row.get("avatar"),
            status=safe_row_value(row, "status", STATUS_ACTIVE),
            level=safe_row_value(row, "level", 0),
            roles=list(roles or []),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            register_ip=row.get("register_ip"),
            created_at=safe_row_value(row, "created_at", datetime.utcnow()),
            updated_at=safe_row_value(row, "updated_at", datetime.utcnow()),
        )

    @staticmethod
    def _menu_from_row(row: Dict[str, Any], permissions: Optional[List[Permission]] = None) -> Menu:
        return Menu(
            id=int(row["id"]),
            name=row["name"],
            title=row["title"],
            path=row["path"],
            type=row["type"],
            icon=row.get("icon"),
            component=row.get("component"),
            redirect=row.get("redirect"),
            status=safe_row_value(row, "status", STATUS_ACTIVE),
            hidden=bool(safe_row_value(row, "hidden", False)),
            keep_alive=bool(safe_row_value(row, "keep_alive", False)),
            affix=bool(safe_row_value(row, "affix", False)),
            sort=safe_row_value(row, "sort", 0),
            parent_id=row.get("parent_id"),
            menu_path=row.get("menu_path"),
            external_link=row.get("external_link"),
            is_system=bool(safe_row_value(row, "is_system", False)),
            description=row.get("description"),
            permissions=list(permissions or []),
            created_at=safe_row_value(row, "created_at", datetime.utcnow()),
            updated_at=safe_row_value(row, "updated_at", datetime.utcnow()),
            deleted_at=row.get("deleted_at"),
        )

    # -- relation loaders ----------------------------------------------------

    def _permissions_by_role(self, conn, role_ids: List[int]) -> Dict[int, List[Permission]]:
        grouped: Dict[int, List[Permission]] = {rid: [] for rid in role_ids}
        if not role_ids:
            return grouped
        rows = conn.execute(
            """
            SELECT rp.role_id AS link_id, p.*
            FROM role_permission rp
            JOIN permission p ON p.id = rp.permission_id
            WHERE rp.role_id = ANY(%s) AND p.deleted_at IS NULL
            ORDER BY p.sort, p.id
            """,
            (role_ids,),
        ).fetchall()
        for row in rows:
            grouped.setdefault(int(row["link_id"]), []).append(self._permission_from_row(row))
        return grouped

    def _roles_for_user(self, conn, user_id: int) -> List[Role]:
        rows = conn.execute(
            """
            SELECT r.*
            FROM user_role ur
            JOIN role r ON r.id = ur.role_id
            WHERE ur.user_id = %s AND r.deleted_at IS NULL
            ORDER BY ur.position, r.id
            """,
            (user_id,),
        ).fetchall()
        perms = self._permissions_by_role(conn, [int(r["id"]) for r in rows])
        return [self._role_from_row(row, perms.get(int(row["id"]))) for row in rows]

    def _permissions_for_menus(self, conn, menu_ids: List[int]) -> Dict[int, List[Permission]]:
        grouped: Dict[int, List[Permission]] = {mid: [] for mid in menu_ids}
        if not menu_ids:
            return grouped
        rows = conn.execute(
            """
            SELECT mp.menu_id AS link_id, p.*
            FROM menu_permission mp
            JOIN permission p ON p.id = mp.permission_id
            WHERE mp.menu_id = ANY(%s) AND p.deleted_at IS NULL
            ORDER BY p.sort, p.id
            """,
            (menu_ids,),
        ).fetchall()
        for row in rows:
            grouped.setdefault(int(row["link_id"]), []).append(self._permission_from_row(row))
        return grouped

    def _replace_links(
        self, conn, table: str, owner_column: str, owner_id: int, target_column: str, ids: List[int]
    ) -> None:
        conn.execute(f"DELETE FROM {table} WHERE {owner_column} = %s", (owner_id,))
        for position, target_id in enumerate(ids):
            if table == "user_role":
                conn.execute(
                    "INSERT INTO user_role (user_id, role_id, position) VALUES (%s, %s, %s)",
                    (owner_id, target_id, position),
                )
            else:
                conn.execute(
                    f"INSERT INTO {table} ({owner_column}, {target_column}) VALUES (%s, %s)",
                    (owner_id, target_id),
                )

    def _existing_ids(self, conn, table: str, ids: Iterable[int]) -> List[int]:
        wanted = dedupe_ids(ids)
        if not wanted:
            return []
        rows = conn.execute(
            f"SELECT id FROM {table} WHERE id = ANY(%s) AND deleted_at IS NULL", (wanted,)
        ).fetchall()
        present = {int(r["id"]) for r in rows}
        return [i for i in wanted if i in present]

    def _update_columns(
        self, conn, table: str, row_id: int, updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        if not updates:
            return conn.execute(
                f"SELECT * FROM {table} WHERE id = %s AND deleted_at IS NULL", (row_id,)
            ).fetchone()
        # Column names come from the per-entity whitelist in storage.common
        assignments = ", ".join(f"{column} = %s" for column in updates)
        return conn.execute(
            f"UPDATE {table} SET {assignments}, updated_at = now() "
            "WHERE id = %s AND deleted_at IS NULL RETURNING *",
            (*updates.values(), row_id),
        ).fetchone()

    def _soft_delete(self, conn, table: str, row_id: int) -> bool:
        row = conn.execute(
            f"UPDATE {table} SET deleted_at = now() WHERE id = %s AND deleted_at IS NULL RETURNING id",
            (row_id,),
        ).fetchone()
        return row is not None

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        nickname: Optional[str] = None,
        status: str = STATUS_ACTIVE,
        register_ip: Optional[str] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (username, email, phone, password_hash, nickname, status, register_ip)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (username, email, phone, password_hash, nickname or username, status, register_ip),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field_name = _unique_field(exc, ("username", "email", "phone"), "username")
            raise ConstraintViolation(f"{field_name} already exists", {"field": field_name})
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
            if not row:
                return None
            return self._user_from_row(row, self._roles_for_user(conn, int(row["id"])))

    def _get_user_by(self, field_name: str, value: str) -> Optional[User]:
        ensure_lookup_field(field_name)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {field_name} = %s", (value,)
            ).fetchone()
            if not row:
                return None
            return self._user_from_row(row, self._roles_for_user(conn, int(row["id"])))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._get_user_by("username", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_by("email", email)

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        return self._get_user_by("phone", phone)

    def get_user_credentials(
        self, field_name: str, value: str
    ) -> Optional[Tuple[User, str]]:
        ensure_lookup_field(field_name)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS}, password_hash FROM app_user WHERE {field_name} = %s",
                (value,),
            ).fetchone()
            if not row:
                return None
            user = self._user_from_row(row, self._roles_for_user(conn, int(row["id"])))
        return user, row["password_hash"]

    def update_user_login(self, user_id: int, at: datetime, ip: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET last_login_at = %s, last_login_ip = %s, updated_at = now()
                WHERE id = %s
                """,
                (at, ip, user_id),
            )

    def set_user_status(self, user_id: int, status: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s, updated_at = now() WHERE id = %s RETURNING id",
                (status, user_id),
            ).fetchone()
        return self.get_user(user_id) if row else None

    def set_user_roles(self, user_id: int, role_ids: Iterable[int]) -> Optional[User]:
        with self._connect() as conn:
            exists = conn.execute("SELECT 1 FROM app_user WHERE id = %s", (user_id,)).fetchone()
            if not exists:
                return None
            ids = self._existing_ids(conn, "role", role_ids)
            self._replace_links(conn, "user_role", "user_id", user_id, "role_id", ids)
        return self.get_user(user_id)

    def list_user_ids_with_role(self, role_id: int) -> List[int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT ur.user_id
                FROM user_role ur
                JOIN role r ON r.id = ur.role_id
                WHERE ur.role_id = %s AND r.deleted_at IS NULL
                ORDER BY ur.user_id
                """,
                (role_id,),
            ).fetchall()
        return [int(r["user_id"]) for r in rows]

    # -- roles ---------------------------------------------------------------

    def create_role(
        self,
        name: str,
        code: str,
        *,
        description: Optional[str] = None,
        status: str = STATUS_ACTIVE,
        level: int = 0,
        is_system: bool = False,
        sort: int = 0,
        permission_ids: Optional[Iterable[int]] = None,
    ) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO role (name, code, description, status, level, is_system, sort)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (name, code, description, status, level, is_system, sort),
                ).fetchone()
                role_id = int(row["id"])
                ids = self._existing_ids(conn, "permission", permission_ids or [])
                self._replace_links(conn, "role_permission", "role_id", role_id, "permission_id", ids)
        except errors.UniqueViolation as exc:
            field_name = _unique_field(exc, ("code", "name"), "code")
            raise ConstraintViolation(f"role {field_name} already exists", {"field": field_name})
        return self.get_role(role_id)

    def _load_roles(self, conn, where: str, params: tuple, order: str = "r.id") -> List[Role]:
        live = f"{where} AND r.deleted_at IS NULL" if where else "WHERE r.deleted_at IS NULL"
        rows = conn.execute(f"SELECT r.* FROM role r {live} ORDER BY {order}", params).fetchall()
        perms = self._permissions_by_role(conn, [int(r["id"]) for r in rows])
        return [self._role_from_row(row, perms.get(int(row["id"]))) for row in rows]

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._connect() as conn:
            roles = self._load_roles(conn, "WHERE r.id = %s", (role_id,))
        return roles[0] if roles else None

    def get_roles(self, role_ids: Iterable[int]) -> List[Role]:
        ids = dedupe_ids(role_ids)
        if not ids:
            return []
        with self._connect() as conn:
            roles = {r.id: r for r in self._load_roles(conn, "WHERE r.id = ANY(%s)", (ids,))}
        return [roles[i] for i in ids if i in roles]

    def get_role_by_code(self, code: str) -> Optional[Role]:
        with self._connect() as conn:
            roles = self._load_roles(conn, "WHERE r.code = %s", (code,))
        return roles[0] if roles else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            roles = self._load_roles(conn, "WHERE r.name = %s", (name,))
        return roles[0] if roles else None

    def list_roles(
        self, *, status: Optional[str] = None, is_system: Optional[bool] = None
    ) -> List[Role]:
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("r.status = %s")
            params.append(status)
        if is_system is not None:
            clauses.append("r.is_system = %s")
            params.append(is_system)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            return self._load_roles(
                conn, where, tuple(params), order="r.sort DESC, r.level DESC, r.id"
            )

    def update_role(
        self,
        role_id: int,
        *,
        permission_ids: Optional[Iterable[int]] = None,
        **fields,
    ) -> Optional[Role]:
        updates = filter_updates(fields, ROLE_UPDATABLE)
        try:
            with self._connect() as conn:
                row = self._update_columns(conn, "role", role_id, updates)
                if not row:
                    return None
                if permission_ids is not None:
                    ids = self._existing_ids(conn, "permission", permission_ids)
                    self._replace_links(
                        conn, "role_permission", "role_id", role_id, "permission_id", ids
                    )
        except errors.UniqueViolation as exc:
            field_name = _unique_field(exc, ("code", "name"), "code")
            raise ConstraintViolation(f"role {field_name} already exists", {"field": field_name})
        return self.get_role(role_id)

    def delete_role(self, role_id: int) -> bool:
        with self._connect() as conn:
            if not self._soft_delete(conn, "role", role_id):
                return False
            conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
            conn.execute("DELETE FROM user_role WHERE role_id = %s", (role_id,))
        return True

    # -- permissions ---------------------------------------------------------

    def create_permission(
        self,
        name: str,
        code: str,
        module: str,
        action: str,
        *,
        description: Optional[str] = None,
        resource: Optional[str] = None,
        status: str = STATUS_ACTIVE,
        level: int = 0,
        is_system: bool = False,
        sort: int = 0,
        parent_id: Optional[int] = None,
        path: Optional[str] = None,
    ) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO permission
                        (name, code, module, action, description, resource, status, level,
                         is_system, sort, parent_id, path)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        name,
                        code,
                        module,
                        action,
                        description,
                        resource,
                        status,
                        level,
                        is_system,
                        sort,
                        parent_id,
                        path,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission code already exists", {"field": "code"})
        return self._permission_from_row(row)

    def get_permission(self, permission_id: int) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE id = %s AND deleted_at IS NULL", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def get_permissions(self, permission_ids: Iterable[int]) -> List[Permission]:
        ids = dedupe_ids(permission_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission WHERE id = ANY(%s) AND deleted_at IS NULL", (ids,)
            ).fetchall()
        by_id = {int(r["id"]): self._permission_from_row(r) for r in rows}
        return [by_id[i] for i in ids if i in by_id]

    def find_permission_by_code(
        self, code: str, status: Optional[str] = None
    ) -> Optional[Permission]:
        query = "SELECT * FROM permission WHERE code = %s AND deleted_at IS NULL"
        params: List[Any] = [code]
        if status is not None:
            query += " AND status = %s"
            params.append(status)
        with self._connect() as conn:
            row = conn.execute(query, tuple(params)).fetchone()
        return self._permission_from_row(row) if row else None

    def find_permission_by_resource_action(
        self, resource: str, action: str, status: Optional[str] = None
    ) -> Optional[Permission]:
        query = (
            "SELECT * FROM permission "
            "WHERE resource = %s AND action = %s AND deleted_at IS NULL"
        )
        params: List[Any] = [resource, action]
        if status is not None:
            query += " AND status = %s"
            params.append(status)
        with self._connect() as conn:
            row = conn.execute(query + " ORDER BY id LIMIT 1", tuple(params)).fetchone()
        return self._permission_from_row(row) if row else None

    def find_permissions_for_role_ids(
        self, role_ids: Iterable[int], status: Optional[str] = None
    ) -> List[Permission]:
        ids = dedupe_ids(role_ids)
        if not ids:
            return []
        query = """
            SELECT DISTINCT p.*
            FROM role_permission rp
            JOIN permission p ON p.id = rp.permission_id
            WHERE rp.role_id = ANY(%s) AND p.deleted_at IS NULL
        """
        params: List[Any] = [ids]
        if status is not None:
            query += " AND p.status = %s"
            params.append(status)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY p.id", tuple(params)).fetchall()
        return [self._permission_from_row(r) for r in rows]

    def list_permissions(
        self, *, status: Optional[str] = None, module: Optional[str] = None
    ) -> List[Permission]:
        clauses: List[str] = ["deleted_at IS NULL"]
        params: List[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        if module is not None:
            clauses.append("module = %s")
            params.append(module)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM permission WHERE {' AND '.join(clauses)} ORDER BY sort, id",
                tuple(params),
            ).fetchall()
        return [self._permission_from_row(r) for r in rows]

    def list_permission_children(self, parent_id: int) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission WHERE parent_id = %s AND deleted_at IS NULL ORDER BY sort, id",
                (parent_id,),
            ).fetchall()
        return [self._permission_from_row(r) for r in rows]

    def update_permission(self, permission_id: int, **fields) -> Optional[Permission]:
        updates = filter_updates(fields, PERMISSION_UPDATABLE)
        try:
            with self._connect() as conn:
                row = self._update_columns(conn, "permission", permission_id, updates)
        except errors.UniqueViolation:
            raise ConstraintViolation("permission code already exists", {"field": "code"})
        return self._permission_from_row(row) if row else None

    def delete_permission(self, permission_id: int) -> bool:
        with self._connect() as conn:
            if not self._soft_delete(conn, "permission", permission_id):
                return False
            conn.execute("DELETE FROM role_permission WHERE permission_id = %s", (permission_id,))
            conn.execute("DELETE FROM menu_permission WHERE permission_id = %s", (permission_id,))
        return True

    # -- menus ---------------------------------------------------------------

    def _load_menus(self, conn, where: str, params: tuple) -> List[Menu]:
        live = f"{where} AND deleted_at IS NULL" if where else "WHERE deleted_at IS NULL"
        rows = conn.execute(
            f"SELECT * FROM menu {live} ORDER BY sort DESC, id", params
        ).fetchall()
        perms = self._permissions_for_menus(conn, [int(r["id"]) for r in rows])
        return [self._menu_from_row(row, perms.get(int(row["id"]))) for row in rows]

    def create_menu(
        self,
        name: str,
        title: str,
        path: str,
        *,
        permission_ids: Optional[Iterable[int]] = None,
        **fields,
    ) -> Menu:
        extra = filter_updates(fields, MENU_UPDATABLE)
        columns = ["name", "title", "path", *extra.keys()]
        placeholders = ", ".join(["%s"] * len(columns))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO menu ({', '.join(columns)}) VALUES ({placeholders}) RETURNING id",
                    (name, title, path, *extra.values()),
                ).fetchone()
                menu_id = int(row["id"])
                ids = self._existing_ids(conn, "permission", permission_ids or [])
                self._replace_links(conn, "menu_permission", "menu_id", menu_id, "permission_id", ids)
        except errors.UniqueViolation:
            raise ConstraintViolation("menu path already exists", {"field": "path"})
        return self.get_menu(menu_id)

    def get_menu(self, menu_id: int) -> Optional[Menu]:
        with self._connect() as conn:
            menus = self._load_menus(conn, "WHERE id = %s", (menu_id,))
        return menus[0] if menus else None

    def get_menu_by_path(self, path: str) -> Optional[Menu]:
        with self._connect() as conn:
            menus = self._load_menus(conn, "WHERE path = %s", (path,))
        return menus[0] if menus else None

    def list_menus(
        self,
        *,
        status: Optional[str] = None,
        hidden: Optional[bool] = None,
        menu_type: Optional[str] = None,
    ) -> List[Menu]:
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        if hidden is not None:
            clauses.append("hidden = %s")
            params.append(hidden)
        if menu_type is not None:
            clauses.append("type = %s")
            params.append(menu_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            return self._load_menus(conn, where, tuple(params))

    def list_menu_children(self, parent_id: int) -> List[Menu]:
        with self._connect() as conn:
            return self._load_menus(conn, "WHERE parent_id = %s", (parent_id,))

    def update_menu(
        self,
        menu_id: int,
        *,
        permission_ids: Optional[Iterable[int]] = None,
        **fields,
    ) -> Optional[Menu]:
        updates = filter_updates(fields, MENU_UPDATABLE)
        try:
            with self._connect() as conn:
                row = self._update_columns(conn, "menu", menu_id, updates)
                if not row:
                    return None
                if permission_ids is not None:
                    ids = self._existing_ids(conn, "permission", permission_ids)
                    self._replace_links(
                        conn, "menu_permission", "menu_id", menu_id, "permission_id", ids
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("menu path already exists", {"field": "path"})
        return self.get_menu(menu_id)

    def delete_menu(self, menu_id: int) -> bool:
        with self._connect() as conn:
            if not self._soft_delete(conn, "menu", menu_id):
                return False
            conn.execute("DELETE FROM menu_permission WHERE menu_id = %s", (menu_id,))
        return True
