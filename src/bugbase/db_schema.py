"""Database schema definitions for the bugbase store.

Contains the canonical SQL schema and the current schema version constant.
"""

from __future__ import annotations

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS subjects (
    id          TEXT PRIMARY KEY,
    username    TEXT NOT NULL UNIQUE,
    role        TEXT NOT NULL DEFAULT 'REPORTER',
    full_name   TEXT DEFAULT '',
    email       TEXT DEFAULT '',
    created_at  TEXT NOT NULL,

    CHECK (role IN ('REPORTER', 'DEVELOPER', 'QA', 'PROJECT_MANAGER', 'ADMIN'))
);

CREATE TABLE IF NOT EXISTS api_tokens (
    token_hash  TEXT PRIMARY KEY,
    subject_id  TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS projects (
    id          TEXT PRIMARY KEY,
    key         TEXT NOT NULL UNIQUE,
    name        TEXT NOT NULL,
    description TEXT DEFAULT '',
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS project_members (
    project_id   TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    subject_id   TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
    capabilities INTEGER NOT NULL DEFAULT 0,
    created_at   TEXT NOT NULL,
    PRIMARY KEY (project_id, subject_id),

    CHECK (capabilities BETWEEN 0 AND 15)
);

CREATE INDEX IF NOT EXISTS idx_members_subject ON project_members(subject_id, project_id);

CREATE TABLE IF NOT EXISTS bugs (
    id              TEXT PRIMARY KEY,
    project_id      TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    number          INTEGER NOT NULL,
    title           TEXT NOT NULL,
    description     TEXT DEFAULT '',
    status          TEXT NOT NULL DEFAULT 'NEW',
    priority        TEXT NOT NULL DEFAULT 'MEDIUM',
    severity        TEXT NOT NULL DEFAULT 'MAJOR',
    reporter_id     TEXT NOT NULL REFERENCES subjects(id),
    assignee_id     TEXT REFERENCES subjects(id) ON DELETE SET NULL,
    environment     TEXT DEFAULT '',
    version_found   TEXT DEFAULT '',
    version_fixed   TEXT DEFAULT '',
    due_date        TEXT,
    estimated_hours REAL,
    actual_hours    REAL,
    custom_fields   TEXT DEFAULT '{}',
    resolved_at     TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,

    CHECK (number >= 1)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_bugs_project_number ON bugs(project_id, number);
CREATE INDEX IF NOT EXISTS idx_bugs_project_status_priority ON bugs(project_id, status, priority, assignee_id);
CREATE INDEX IF NOT EXISTS idx_bugs_reporter ON bugs(reporter_id);
CREATE INDEX IF NOT EXISTS idx_bugs_assignee ON bugs(assignee_id);

CREATE TABLE IF NOT EXISTS comments (
    id          TEXT PRIMARY KEY,
    bug_id      TEXT NOT NULL REFERENCES bugs(id) ON DELETE CASCADE,
    author_id   TEXT NOT NULL REFERENCES subjects(id),
    parent_id   TEXT REFERENCES comments(id) ON DELETE CASCADE,
    content     TEXT NOT NULL,
    is_edited   BOOLEAN NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_comments_bug_parent ON comments(bug_id, parent_id, created_at);

CREATE TABLE IF NOT EXISTS mentions (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    bug_id      TEXT NOT NULL REFERENCES bugs(id) ON DELETE CASCADE,
    comment_id  TEXT REFERENCES comments(id) ON DELETE CASCADE,
    subject_id  TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_mentions_dedup
  ON mentions(bug_id, coalesce(comment_id, ''), subject_id);

CREATE TABLE IF NOT EXISTS watchers (
    bug_id      TEXT NOT NULL REFERENCES bugs(id) ON DELETE CASCADE,
    subject_id  TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
    created_at  TEXT NOT NULL,
    PRIMARY KEY (bug_id, subject_id)
);

CREATE INDEX IF NOT EXISTS idx_watchers_subject ON watchers(subject_id, bug_id);

-- Append-only. No foreign key on bug_id: entries outlive the bugs they describe.
CREATE TABLE IF NOT EXISTS activity_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    bug_id      TEXT NOT NULL,
    project_id  TEXT NOT NULL,
    actor_id    TEXT NOT NULL,
    action      TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    metadata    TEXT DEFAULT '{}',
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activity_bug_time ON activity_log(bug_id, created_at, id);
CREATE INDEX IF NOT EXISTS idx_activity_project ON activity_log(project_id, created_at);

CREATE TRIGGER IF NOT EXISTS activity_log_no_update BEFORE UPDATE ON activity_log BEGIN
    SELECT RAISE(ABORT, 'activity_log is append-only');
END;
CREATE TRIGGER IF NOT EXISTS activity_log_no_delete BEFORE DELETE ON activity_log BEGIN
    SELECT RAISE(ABORT, 'activity_log is append-only');
END;

CREATE TABLE IF NOT EXISTS notifications (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    recipient_id  TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
    event_id      TEXT NOT NULL,
    type          TEXT NOT NULL,
    title         TEXT NOT NULL,
    message       TEXT NOT NULL DEFAULT '',
    data          TEXT DEFAULT '{}',
    is_read       BOOLEAN NOT NULL DEFAULT 0,
    created_at    TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_notifications_dedup ON notifications(recipient_id, event_id);
CREATE INDEX IF NOT EXISTS idx_notifications_recipient ON notifications(recipient_id, is_read, created_at);
"""

CURRENT_SCHEMA_VERSION = 1
