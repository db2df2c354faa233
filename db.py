"""
Módulo de persistencia PostgreSQL del BFF de facturación.
Guarda una bitácora de cada llamada HTTP hecha a Siigo para auditoría y métricas.

Tabla esperada:
    CREATE SCHEMA IF NOT EXISTS siigo_bff;
    CREATE TABLE IF NOT EXISTS siigo_bff.upstream_calls (
        id          BIGSERIAL PRIMARY KEY,
        request_id  TEXT,
        method      TEXT NOT NULL,
        path        TEXT NOT NULL,
        status      INTEGER,
        success     BOOLEAN NOT NULL,
        retried     BOOLEAN NOT NULL DEFAULT FALSE,
        duration_ms INTEGER,
        error_text  TEXT,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    );
"""
import logging
import os
from typing import Optional

import psycopg2
from psycopg2 import pool

logger = logging.getLogger(__name__)

# Pool de conexiones global
_pool: Optional[pool.SimpleConnectionPool] = None


def init_db():
    """Inicializa el pool de conexiones a PostgreSQL."""
    global _pool
    if _pool is not None:
        return

    _pool = pool.SimpleConnectionPool(
        minconn=1,
        maxconn=5,
        dbname=os.getenv("DB_NAME", "facturacion"),
        user=os.getenv("DB_USER", "postgres"),
        password=os.getenv("DB_PASSWORD", ""),
        host=os.getenv("DB_HOST", "localhost"),
        port=int(os.getenv("DB_PORT", "5432")),
    )
    logger.info("Pool de conexiones PostgreSQL inicializado")


def close_db():
    """Cierra el pool de conexiones."""
    global _pool
    if _pool:
        _pool.closeall()
        _pool = None
        logger.info("Pool de conexiones PostgreSQL cerrado")


def is_ready() -> bool:
    return _pool is not None


def _get_conn():
    """Obtiene una conexión del pool."""
    if _pool is None:
        raise RuntimeError("Pool de conexiones no inicializado. Llama init_db() primero.")
    return _pool.getconn()


def _put_conn(conn):
    """Devuelve una conexión al pool."""
    if _pool:
        _pool.putconn(conn)


# ─── Bitácora de llamadas ────────────────────────────────────────

def log_upstream_call(
    request_id: str,
    method: str,
    path: str,
    status: Optional[int],
    success: bool,
    duration_ms: int,
    retried: bool = False,
    error_text: Optional[str] = None,
):
    """Registra una llamada HTTP a Siigo."""
    conn = _get_conn()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """INSERT INTO siigo_bff.upstream_calls
                   (request_id, method, path, status, success, retried, duration_ms, error_text)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s)""",
                (request_id, method, path, status, success, retried, duration_ms, error_text),
            )
        conn.commit()
    except psycopg2.Error:
        conn.rollback()
        raise
    finally:
        _put_conn(conn)


def get_metrics() -> dict:
    """
    Métricas operativas de la bitácora.
    Si la BD no está disponible retorna solo {"db_connected": False}.
    """
    if not is_ready():
        return {"db_connected": False}

    conn = _get_conn()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """SELECT COUNT(*),
                          COUNT(*) FILTER (WHERE NOT success),
                          COUNT(*) FILTER (WHERE retried),
                          COALESCE(AVG(duration_ms), 0),
                          COUNT(*) FILTER (WHERE created_at > CURRENT_TIMESTAMP - INTERVAL '1 hour')
                   FROM siigo_bff.upstream_calls"""
            )
            total, failed, retried, avg_ms, last_hour = cur.fetchone()
        return {
            "db_connected": True,
            "upstream_calls": total,
            "upstream_failures": failed,
            "upstream_retries": retried,
            "avg_duration_ms": round(float(avg_ms), 1),
            "calls_last_hour": last_hour,
        }
    finally:
        _put_conn(conn)
