"""
SQLite persistence layer for SignalBot.
All database operations go through this module.

Positions are closed only inside `locked_open_position`, which takes the
database write lock (BEGIN IMMEDIATE) before re-reading the row. That lock is
the single serialization point between the webhook exit path and the
position monitor.
"""
import sqlite3
import json
import uuid
import os
from contextlib import contextmanager
from datetime import datetime, timezone

from config.settings import settings
from signalbot.core.errors import PersistenceError

DB_PATH = settings.DB_PATH

OPEN = "OPEN"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _get_connection() -> sqlite3.Connection:
    os.makedirs(os.path.dirname(os.path.abspath(DB_PATH)), exist_ok=True)
    # isolation_level=None: autocommit, transactions are opened explicitly
    conn = sqlite3.connect(DB_PATH, timeout=settings.DB_BUSY_TIMEOUT_SECONDS, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db():
    conn = _get_connection()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS exchanges (
            id              TEXT PRIMARY KEY,
            name            TEXT NOT NULL DEFAULT 'binance',
            api_key         TEXT NOT NULL DEFAULT '',
            api_secret      TEXT NOT NULL DEFAULT '',
            is_active       INTEGER NOT NULL DEFAULT 1,
            created_at      TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS bots (
            id                TEXT PRIMARY KEY,
            name              TEXT NOT NULL,
            exchange_id       TEXT NOT NULL,
            symbols           TEXT NOT NULL DEFAULT '[]',
            account_type      TEXT NOT NULL DEFAULT 'SPOT',
            trade_amount      REAL NOT NULL,
            trade_amount_type TEXT NOT NULL DEFAULT 'QUOTE',
            leverage          REAL NOT NULL DEFAULT 1,
            stop_loss         REAL,
            take_profit       REAL,
            auto_repay        INTEGER NOT NULL DEFAULT 0,
            is_active         INTEGER NOT NULL DEFAULT 1,
            total_trades      INTEGER NOT NULL DEFAULT 0,
            win_trades        INTEGER NOT NULL DEFAULT 0,
            loss_trades       INTEGER NOT NULL DEFAULT 0,
            total_pnl         REAL NOT NULL DEFAULT 0,
            total_volume      REAL NOT NULL DEFAULT 0,
            created_at        TEXT NOT NULL,
            FOREIGN KEY (exchange_id) REFERENCES exchanges(id)
        );
        CREATE TABLE IF NOT EXISTS signals (
            id              TEXT PRIMARY KEY,
            bot_id          TEXT NOT NULL,
            action          TEXT NOT NULL,
            symbol          TEXT NOT NULL,
            price           REAL,
            message         TEXT,
            processed       INTEGER NOT NULL DEFAULT 0,
            error           TEXT,
            position_id     TEXT,
            created_at      TEXT NOT NULL,
            processed_at    TEXT,
            FOREIGN KEY (bot_id) REFERENCES bots(id) ON DELETE CASCADE
        );
        CREATE TABLE IF NOT EXISTS positions (
            id              TEXT PRIMARY KEY,
            bot_id          TEXT NOT NULL,
            symbol          TEXT NOT NULL,
            side            TEXT NOT NULL,
            account_type    TEXT NOT NULL DEFAULT 'SPOT',
            entry_price     REAL NOT NULL,
            quantity        REAL NOT NULL,
            entry_value     REAL NOT NULL,
            current_price   REAL,
            status          TEXT NOT NULL DEFAULT 'OPEN',
            stop_loss       REAL,
            take_profit     REAL,
            exit_price      REAL,
            exit_value      REAL,
            pnl             REAL NOT NULL DEFAULT 0,
            pnl_percent     REAL NOT NULL DEFAULT 0,
            close_reason    TEXT,
            created_at      TEXT NOT NULL,
            closed_at       TEXT,
            FOREIGN KEY (bot_id) REFERENCES bots(id) ON DELETE CASCADE
        );
        CREATE TABLE IF NOT EXISTS orders (
            id                TEXT PRIMARY KEY,
            position_id       TEXT NOT NULL,
            exchange_order_id TEXT NOT NULL,
            symbol            TEXT NOT NULL,
            type              TEXT NOT NULL,
            side              TEXT NOT NULL,
            order_type        TEXT NOT NULL DEFAULT 'MARKET',
            price             REAL NOT NULL,
            quantity          REAL NOT NULL,
            value             REAL NOT NULL,
            status            TEXT NOT NULL,
            fill_percent      REAL NOT NULL DEFAULT 100,
            side_effect       TEXT,
            pnl               REAL,
            created_at        TEXT NOT NULL,
            FOREIGN KEY (position_id) REFERENCES positions(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_positions_bot_symbol_status
            ON positions (bot_id, symbol, status);
        CREATE INDEX IF NOT EXISTS idx_signals_bot_created
            ON signals (bot_id, created_at);
    """)
    conn.close()


# ── Exchange / Bot ──────────────────────────────────────────────


def _row_to_exchange(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "api_key": row["api_key"],
        "api_secret": row["api_secret"],
        "is_active": bool(row["is_active"]),
    }


def _row_to_bot(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "exchange_id": row["exchange_id"],
        "symbols": json.loads(row["symbols"]),
        "account_type": row["account_type"],
        "trade_amount": row["trade_amount"],
        "trade_amount_type": row["trade_amount_type"],
        "leverage": row["leverage"],
        "stop_loss": row["stop_loss"],
        "take_profit": row["take_profit"],
        "auto_repay": bool(row["auto_repay"]),
        "is_active": bool(row["is_active"]),
        "total_trades": row["total_trades"],
        "win_trades": row["win_trades"],
        "loss_trades": row["loss_trades"],
        "total_pnl": row["total_pnl"],
        "total_volume": row["total_volume"],
    }


def save_exchange(exchange: dict) -> dict:
    exchange_id = exchange.get("id") or str(uuid.uuid4())
    conn = _get_connection()
    conn.execute(
        """INSERT INTO exchanges (id, name, api_key, api_secret, is_active, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            exchange_id,
            exchange.get("name", "binance"),
            exchange.get("api_key", ""),
            exchange.get("api_secret", ""),
            int(exchange.get("is_active", True)),
            _now(),
        ),
    )
    conn.close()
    return get_exchange(exchange_id)


def get_exchange(exchange_id: str) -> dict | None:
    conn = _get_connection()
    row = conn.execute("SELECT * FROM exchanges WHERE id = ?", (exchange_id,)).fetchone()
    conn.close()
    return _row_to_exchange(row) if row else None


def save_bot(bot: dict) -> dict:
    bot_id = bot.get("id") or str(uuid.uuid4())
    conn = _get_connection()
    conn.execute(
        """INSERT INTO bots
           (id, name, exchange_id, symbols, account_type, trade_amount,
            trade_amount_type, leverage, stop_loss, take_profit,
            auto_repay, is_active, created_at)
           VALUES (?,?,?,?,?,?, ?,?,?,?, ?,?,?)""",
        (
            bot_id,
            bot["name"],
            bot["exchange_id"],
            json.dumps([s.upper() for s in bot.get("symbols", [])]),
            bot.get("account_type", "SPOT"),
            bot["trade_amount"],
            bot.get("trade_amount_type", "QUOTE"),
            bot.get("leverage", 1),
            bot.get("stop_loss"),
            bot.get("take_profit"),
            int(bot.get("auto_repay", False)),
            int(bot.get("is_active", True)),
            _now(),
        ),
    )
    conn.close()
    return get_bot(bot_id)


def get_bot(bot_id: str) -> dict | None:
    conn = _get_connection()
    row = conn.execute("SELECT * FROM bots WHERE id = ?", (bot_id,)).fetchone()
    conn.close()
    return _row_to_bot(row) if row else None


# ── Signals ──────────────────────────────────────────────


def _row_to_signal(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "bot_id": row["bot_id"],
        "action": row["action"],
        "symbol": row["symbol"],
        "price": row["price"],
        "message": row["message"],
        "processed": bool(row["processed"]),
        "error": row["error"],
        "position_id": row["position_id"],
        "created_at": row["created_at"],
        "processed_at": row["processed_at"],
    }


def create_signal(bot_id: str, draft: dict) -> dict:
    """Record an alert on receipt, before any processing."""
    signal_id = str(uuid.uuid4())
    conn = _get_connection()
    conn.execute(
        """INSERT INTO signals (id, bot_id, action, symbol, price, message, processed, created_at)
           VALUES (?, ?, ?, ?, ?, ?, 0, ?)""",
        (
            signal_id,
            bot_id,
            draft["action"],
            draft["symbol"],
            draft.get("price"),
            draft.get("message"),
            _now(),
        ),
    )
    conn.close()
    return get_signal(signal_id)


def mark_signal_processed(signal_id: str, error: str = None, position_id: str = None) -> bool:
    """Terminal write. A signal that is already processed is left untouched."""
    conn = _get_connection()
    cursor = conn.execute(
        """UPDATE signals
           SET processed = 1, error = ?, position_id = ?, processed_at = ?
           WHERE id = ? AND processed = 0""",
        (error, position_id, _now(), signal_id),
    )
    conn.close()
    return cursor.rowcount > 0


def get_signal(signal_id: str) -> dict | None:
    conn = _get_connection()
    row = conn.execute("SELECT * FROM signals WHERE id = ?", (signal_id,)).fetchone()
    conn.close()
    return _row_to_signal(row) if row else None


def list_signals(bot_id: str, limit: int = 10) -> list[dict]:
    conn = _get_connection()
    rows = conn.execute(
        "SELECT * FROM signals WHERE bot_id = ? ORDER BY created_at DESC LIMIT ?",
        (bot_id, limit),
    ).fetchall()
    conn.close()
    return [_row_to_signal(r) for r in rows]


# ── Positions / Orders ──────────────────────────────────────────────


def _row_to_position(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "bot_id": row["bot_id"],
        "symbol": row["symbol"],
        "side": row["side"],
        "account_type": row["account_type"],
        "entry_price": row["entry_price"],
        "quantity": row["quantity"],
        "entry_value": row["entry_value"],
        "current_price": row["current_price"],
        "status": row["status"],
        "stop_loss": row["stop_loss"],
        "take_profit": row["take_profit"],
        "exit_price": row["exit_price"],
        "exit_value": row["exit_value"],
        "pnl": row["pnl"],
        "pnl_percent": row["pnl_percent"],
        "close_reason": row["close_reason"],
        "created_at": row["created_at"],
        "closed_at": row["closed_at"],
    }


def _row_to_order(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "position_id": row["position_id"],
        "exchange_order_id": row["exchange_order_id"],
        "symbol": row["symbol"],
        "type": row["type"],
        "side": row["side"],
        "order_type": row["order_type"],
        "price": row["price"],
        "quantity": row["quantity"],
        "value": row["value"],
        "status": row["status"],
        "fill_percent": row["fill_percent"],
        "side_effect": row["side_effect"],
        "pnl": row["pnl"],
        "created_at": row["created_at"],
    }


def _insert_order(conn: sqlite3.Connection, order: dict) -> dict:
    order = {**order, "id": str(uuid.uuid4()), "created_at": _now()}
    conn.execute(
        """INSERT INTO orders
           (id, position_id, exchange_order_id, symbol, type, side, order_type,
            price, quantity, value, status, fill_percent, side_effect, pnl, created_at)
           VALUES (?,?,?,?,?,?,?, ?,?,?,?,?,?,?,?)""",
        (
            order["id"],
            order["position_id"],
            order["exchange_order_id"],
            order["symbol"],
            order["type"],
            order["side"],
            order.get("order_type", "MARKET"),
            order["price"],
            order["quantity"],
            order["value"],
            order["status"],
            order.get("fill_percent", 100.0),
            order.get("side_effect"),
            order.get("pnl"),
            order["created_at"],
        ),
    )
    return {
        "order_type": "MARKET", "fill_percent": 100.0, "side_effect": None, "pnl": None,
        **order,
    }


def open_position(position: dict, entry_order: dict) -> tuple[dict, dict]:
    """Create an OPEN position and its ENTRY order in one transaction."""
    position_id = str(uuid.uuid4())
    conn = _get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(
            """INSERT INTO positions
               (id, bot_id, symbol, side, account_type, entry_price, quantity,
                entry_value, current_price, status, stop_loss, take_profit, created_at)
               VALUES (?,?,?,?,?,?,?, ?,?,?,?,?,?)""",
            (
                position_id,
                position["bot_id"],
                position["symbol"],
                position["side"],
                position.get("account_type", "SPOT"),
                position["entry_price"],
                position["quantity"],
                position["entry_value"],
                position["entry_price"],
                OPEN,
                position.get("stop_loss"),
                position.get("take_profit"),
                _now(),
            ),
        )
        order = _insert_order(conn, {**entry_order, "position_id": position_id})
        conn.execute("COMMIT")
    except sqlite3.Error as e:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise PersistenceError(f"Failed to record opened position: {e}") from e
    finally:
        conn.close()
    return get_position(position_id), order


def get_position(position_id: str) -> dict | None:
    conn = _get_connection()
    row = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
    conn.close()
    return _row_to_position(row) if row else None


def get_open_position(bot_id: str, symbol: str, side: str = None) -> dict | None:
    """The open position for a bot/symbol (optionally a side). Oldest first."""
    conn = _get_connection()
    query = "SELECT * FROM positions WHERE bot_id = ? AND symbol = ? AND status = 'OPEN'"
    params: list = [bot_id, symbol]
    if side:
        query += " AND side = ?"
        params.append(side)
    query += " ORDER BY created_at ASC LIMIT 1"
    row = conn.execute(query, params).fetchone()
    conn.close()
    return _row_to_position(row) if row else None


def list_monitored_positions() -> list[dict]:
    """OPEN positions with a stop loss or take profit set."""
    conn = _get_connection()
    rows = conn.execute(
        """SELECT * FROM positions
           WHERE status = 'OPEN' AND (stop_loss IS NOT NULL OR take_profit IS NOT NULL)
           ORDER BY created_at ASC"""
    ).fetchall()
    conn.close()
    return [_row_to_position(r) for r in rows]


def list_positions(bot_id: str, status: str = None) -> list[dict]:
    conn = _get_connection()
    if status:
        rows = conn.execute(
            "SELECT * FROM positions WHERE bot_id = ? AND status = ? ORDER BY created_at DESC",
            (bot_id, status),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM positions WHERE bot_id = ? ORDER BY created_at DESC", (bot_id,)
        ).fetchall()
    conn.close()
    return [_row_to_position(r) for r in rows]


def update_position_price(position_id: str, current_price: float) -> bool:
    conn = _get_connection()
    cursor = conn.execute(
        "UPDATE positions SET current_price = ? WHERE id = ? AND status = 'OPEN'",
        (current_price, position_id),
    )
    conn.close()
    return cursor.rowcount > 0


def list_orders(position_id: str) -> list[dict]:
    conn = _get_connection()
    rows = conn.execute(
        "SELECT * FROM orders WHERE position_id = ? ORDER BY created_at ASC", (position_id,)
    ).fetchall()
    conn.close()
    return [_row_to_order(r) for r in rows]


# ── Guarded close ──────────────────────────────────────────────


@contextmanager
def locked_open_position(position_id: str):
    """
    Yield (conn, position) with the database write lock held.

    `position` is None when the row no longer exists or is not OPEN; callers
    must then do nothing. Leaving the block normally commits, an exception
    rolls back and the position stays OPEN.
    """
    conn = _get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
        position = _row_to_position(row) if row and row["status"] == OPEN else None
        yield conn, position
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def record_close(conn: sqlite3.Connection, position_id: str, bot_id: str, close: dict, exit_order: dict) -> dict:
    """
    Flip an OPEN position to a terminal status, insert its EXIT order and
    update the bot aggregates. Must run inside `locked_open_position`.
    """
    cursor = conn.execute(
        """UPDATE positions
           SET status = ?, exit_price = ?, exit_value = ?, current_price = ?,
               pnl = ?, pnl_percent = ?, close_reason = ?, closed_at = ?
           WHERE id = ? AND status = 'OPEN'""",
        (
            close["status"],
            close.get("exit_price"),
            close.get("exit_value"),
            close.get("exit_price"),
            close.get("pnl", 0.0),
            close.get("pnl_percent", 0.0),
            close.get("close_reason"),
            _now(),
            position_id,
        ),
    )
    if cursor.rowcount != 1:
        raise PersistenceError(f"Position {position_id} was not OPEN at close time")

    order = _insert_order(conn, {**exit_order, "position_id": position_id})

    pnl = close.get("pnl", 0.0)
    conn.execute(
        """UPDATE bots
           SET total_trades = total_trades + 1,
               win_trades = win_trades + ?,
               loss_trades = loss_trades + ?,
               total_pnl = total_pnl + ?,
               total_volume = total_volume + ?
           WHERE id = ?""",
        (
            1 if pnl > 0 else 0,
            1 if pnl <= 0 else 0,
            pnl,
            abs(close.get("exit_value") or 0.0),
            bot_id,
        ),
    )
    return order


def record_exit_order(conn: sqlite3.Connection, position_id: str, exit_order: dict) -> dict:
    """EXIT order that does not close the position (e.g. partially filled)."""
    return _insert_order(conn, {**exit_order, "position_id": position_id})


# ── Stats ──────────────────────────────────────────────


def get_bot_stats(bot_id: str) -> dict:
    """Summary stats for a bot's closed positions plus its running counters."""
    bot = get_bot(bot_id)
    closed = [
        p for p in list_positions(bot_id)
        if p["status"] in ("CLOSED", "MARKET_CLOSED") and p["exit_value"] is not None
    ]
    counters = {
        "total_trades": bot["total_trades"] if bot else 0,
        "win_trades": bot["win_trades"] if bot else 0,
        "loss_trades": bot["loss_trades"] if bot else 0,
        "total_pnl": round(bot["total_pnl"], 8) if bot else 0.0,
        "total_volume": round(bot["total_volume"], 8) if bot else 0.0,
    }
    if not closed:
        return {
            **counters,
            "closed_positions": 0, "win_rate": 0.0, "average_win": 0.0,
            "average_loss": 0.0, "profit_factor": 0.0, "close_reasons": {},
        }
    wins = [p["pnl"] for p in closed if p["pnl"] > 0]
    losses = [p["pnl"] for p in closed if p["pnl"] <= 0]
    gross_profit = sum(wins)
    gross_loss = abs(sum(losses))
    if gross_loss > 0:
        profit_factor = round(gross_profit / gross_loss, 2)
    else:
        profit_factor = 999.0 if gross_profit > 0 else 0.0
    reasons: dict[str, int] = {}
    for p in closed:
        r = p["close_reason"] or "unknown"
        reasons[r] = reasons.get(r, 0) + 1
    return {
        **counters,
        "closed_positions": len(closed),
        "win_rate": round(len(wins) / len(closed) * 100, 1),
        "average_win": round(gross_profit / len(wins), 8) if wins else 0.0,
        "average_loss": round(-gross_loss / len(losses), 8) if losses else 0.0,
        "profit_factor": profit_factor,
        "close_reasons": reasons,
    }
