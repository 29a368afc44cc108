"""Database schema DDL for the session relay."""

SESSIONS_TABLE_DDL = """
CREATE TABLE sessions (
  id              TEXT PRIMARY KEY,
  name            TEXT,
  status          TEXT NOT NULL CHECK (status IN ('pending', 'ready', 'disconnected')),
  api_key         TEXT,
  webhook_url     TEXT,
  webhook_secret  TEXT,
  owner_id        TEXT,
  created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_sessions_status
ON sessions (status, created_at);

CREATE INDEX idx_sessions_owner
ON sessions (owner_id);
"""

REMINDERS_TABLE_DDL = """
CREATE TABLE reminders (
  id           UUID PRIMARY KEY,
  owner_id     TEXT NOT NULL,
  session_id   TEXT REFERENCES sessions (id) ON DELETE SET NULL,
  recipient    TEXT NOT NULL,
  message      TEXT NOT NULL,

  run_at       TIMESTAMPTZ NOT NULL,
  status       TEXT NOT NULL CHECK (status IN ('planned', 'running', 'completed', 'failed')),
  timezone     TEXT,
  recurrence   TEXT,

  attempts     INT NOT NULL DEFAULT 0,
  last_error   JSONB,

  created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);

-- Claim query: planned rows ordered by run_at
CREATE INDEX idx_reminders_planned_run_at
ON reminders (run_at)
WHERE status = 'planned';

CREATE INDEX idx_reminders_owner_status
ON reminders (owner_id, status);

-- Index for the stale-running reaper
CREATE INDEX idx_reminders_running_updated
ON reminders (updated_at)
WHERE status = 'running';
"""

REMINDER_RUNS_TABLE_DDL = """
CREATE TABLE reminder_runs (
  id           BIGSERIAL PRIMARY KEY,
  reminder_id  UUID NOT NULL REFERENCES reminders (id) ON DELETE CASCADE,
  attempt      INT NOT NULL,
  status       TEXT NOT NULL CHECK (status IN ('success', 'failed')),
  error        TEXT,
  run_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  UNIQUE (reminder_id, attempt)
);
"""

WEBHOOK_DELIVERIES_TABLE_DDL = """
CREATE TABLE webhook_deliveries (
  id               UUID PRIMARY KEY,
  session_id       TEXT NOT NULL,
  event_kind       TEXT NOT NULL,
  data             JSONB NOT NULL,
  event_ts         BIGINT NOT NULL,

  status           TEXT NOT NULL CHECK (status IN ('pending', 'running', 'delivered', 'dead')),
  attempts         INT NOT NULL DEFAULT 0,
  max_attempts     INT NOT NULL,
  backoff_policy   JSONB NOT NULL,

  run_at           TIMESTAMPTZ NOT NULL,
  lease_expires_at TIMESTAMPTZ,
  last_error       JSONB,

  created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_webhook_deliveries_pending
ON webhook_deliveries (run_at)
WHERE status = 'pending';

-- Index for lease reaper to find expired leases efficiently
CREATE INDEX idx_webhook_deliveries_expired_leases
ON webhook_deliveries (lease_expires_at)
WHERE status = 'running' AND lease_expires_at IS NOT NULL;
"""

ALL_TABLES_DDL = "\n".join(
    [
        SESSIONS_TABLE_DDL,
        REMINDERS_TABLE_DDL,
        REMINDER_RUNS_TABLE_DDL,
        WEBHOOK_DELIVERIES_TABLE_DDL,
    ]
)
