"""SQLite database schema definitions."""

SCHEMA_SQL = """
-- User profile and goals
CREATE TABLE IF NOT EXISTS user_profiles (
    user_id INTEGER PRIMARY KEY AUTOINCREMENT,
    height_cm REAL,
    birth_date DATE,
    sex TEXT CHECK(sex IN ('male', 'female') OR sex IS NULL),
    athlete BOOLEAN NOT NULL DEFAULT FALSE,
    goal_type TEXT NOT NULL DEFAULT 'maintain'
        CHECK(goal_type IN ('lose', 'gain', 'maintain')),
    goal_rate REAL NOT NULL DEFAULT 0.5,
    target_weight_kg REAL,
    unit_preference TEXT NOT NULL DEFAULT 'metric',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Raw scale readings (immutable once written)
CREATE TABLE IF NOT EXISTS weight_observations (
    observation_id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    weight_kg REAL NOT NULL CHECK(weight_kg BETWEEN 30 AND 300),
    observed_at TIMESTAMP NOT NULL,
    note TEXT,
    FOREIGN KEY (user_id) REFERENCES user_profiles(user_id)
);

CREATE INDEX IF NOT EXISTS idx_weight_obs_user_time
    ON weight_observations(user_id, observed_at);

-- Logged meals / food items
CREATE TABLE IF NOT EXISTS intake_entries (
    entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    eaten_at TIMESTAMP NOT NULL,
    calories REAL NOT NULL CHECK(calories >= 0),
    protein_g REAL NOT NULL DEFAULT 0,
    carbs_g REAL NOT NULL DEFAULT 0,
    fat_g REAL NOT NULL DEFAULT 0,
    description TEXT,
    FOREIGN KEY (user_id) REFERENCES user_profiles(user_id)
);

CREATE INDEX IF NOT EXISTS idx_intake_user_time ON intake_entries(user_id, eaten_at);

-- Per-day aggregate of intake and weight
CREATE TABLE IF NOT EXISTS daily_records (
    user_id INTEGER NOT NULL,
    date DATE NOT NULL,
    scale_weight_kg REAL,
    intake_calories INTEGER,
    intake_protein_g REAL,
    intake_carbs_g REAL,
    intake_fat_g REAL,
    step_count INTEGER,
    status TEXT NOT NULL DEFAULT 'skipped'
        CHECK(status IN ('complete', 'partial', 'skipped')),
    user_override BOOLEAN NOT NULL DEFAULT FALSE,
    PRIMARY KEY (user_id, date),
    FOREIGN KEY (user_id) REFERENCES user_profiles(user_id)
);

-- Derived per-day metabolic state
CREATE TABLE IF NOT EXISTS computed_states (
    user_id INTEGER NOT NULL,
    date DATE NOT NULL,
    trend_weight_kg REAL NOT NULL,
    estimated_tdee_kcal INTEGER NOT NULL,
    raw_tdee_kcal INTEGER NOT NULL,
    flux_confidence_range INTEGER NOT NULL,
    energy_density_used INTEGER NOT NULL CHECK(energy_density_used IN (5500, 7700)),
    weight_delta_kg REAL NOT NULL,
    PRIMARY KEY (user_id, date),
    FOREIGN KEY (user_id) REFERENCES user_profiles(user_id)
);

-- Dated goal switches, replayed by the chain
CREATE TABLE IF NOT EXISTS goal_changes (
    user_id INTEGER NOT NULL,
    effective_date DATE NOT NULL,
    old_goal_type TEXT NOT NULL,
    old_rate REAL NOT NULL,
    new_goal_type TEXT NOT NULL,
    new_rate REAL NOT NULL,
    PRIMARY KEY (user_id, effective_date),
    FOREIGN KEY (user_id) REFERENCES user_profiles(user_id)
);

-- Weekly coaching check-ins
CREATE TABLE IF NOT EXISTS weekly_check_ins (
    user_id INTEGER NOT NULL,
    week_start DATE NOT NULL,
    week_end DATE NOT NULL,
    average_tdee INTEGER NOT NULL,
    suggested_calories INTEGER NOT NULL,
    adherence_score REAL NOT NULL CHECK(adherence_score BETWEEN 0 AND 1),
    confidence_level TEXT NOT NULL,
    trend_weight_start REAL NOT NULL,
    trend_weight_end REAL NOT NULL,
    weekly_weight_change REAL NOT NULL,
    notes TEXT,
    PRIMARY KEY (user_id, week_start),
    FOREIGN KEY (user_id) REFERENCES user_profiles(user_id)
);
"""


def get_schema_sql() -> str:
    """Return the complete schema SQL."""
    return SCHEMA_SQL
