"""
Parameterized SQL for formulas and explicit formula assignments.

Formulas live in `formulas`; companies and sectors carry an optional
`assigned_formula_id` override. Statements that change assignments are meant to
run inside one transaction together with the formula write they belong to, so
no company observes a dangling or missing assignment midway.

All statements use asyncpg positional placeholders ($1, $2, ...).
"""

FORMULA_COLUMNS = """
    id, name, scope, scope_value, condition, signal, priority, enabled,
    is_active_global, formula_type, created_at, updated_at
"""

SELECT_FORMULAS = f"""
    SELECT {FORMULA_COLUMNS}
    FROM formulas
    ORDER BY priority ASC, name ASC
"""

# Row locks keep concurrent administrative operations from interleaving
SELECT_FORMULAS_FOR_UPDATE = f"""
    SELECT {FORMULA_COLUMNS}
    FROM formulas
    ORDER BY id
    FOR UPDATE
"""

SELECT_FORMULA_BY_ID = f"""
    SELECT {FORMULA_COLUMNS}
    FROM formulas
    WHERE id = $1
"""

INSERT_FORMULA = f"""
    INSERT INTO formulas (
        id, name, scope, scope_value, condition, signal, priority, enabled,
        is_active_global, formula_type, created_at, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, NOW(), NOW())
    RETURNING {FORMULA_COLUMNS}
"""

UPDATE_FORMULA = f"""
    UPDATE formulas
    SET name = $2,
        scope = $3,
        scope_value = $4,
        condition = $5,
        signal = $6,
        priority = $7,
        enabled = $8,
        is_active_global = $9,
        formula_type = $10,
        updated_at = NOW()
    WHERE id = $1
    RETURNING {FORMULA_COLUMNS}
"""

DELETE_FORMULA = """
    DELETE FROM formulas WHERE id = $1
"""

# Active global flag: at most one formula holds it
CLEAR_ACTIVE_GLOBAL = """
    UPDATE formulas
    SET is_active_global = FALSE, updated_at = NOW()
    WHERE is_active_global = TRUE AND id <> $1
"""

SET_ACTIVE_GLOBAL = """
    UPDATE formulas
    SET is_active_global = TRUE, updated_at = NOW()
    WHERE id = $1
"""

# Replace-and-delete: move overrides from $1 to $2 (NULL clears them)
REASSIGN_COMPANY_OVERRIDES = """
    UPDATE companies
    SET assigned_formula_id = $2, updated_at = NOW()
    WHERE assigned_formula_id = $1
"""

REASSIGN_SECTOR_OVERRIDES = """
    UPDATE sectors
    SET assigned_formula_id = $2
    WHERE assigned_formula_id = $1
"""

# Reset-all-to-global, clearing variant
CLEAR_COMPANY_OVERRIDES = """
    UPDATE companies
    SET assigned_formula_id = NULL, updated_at = NOW()
    WHERE assigned_formula_id IS NOT NULL
"""

CLEAR_SECTOR_OVERRIDES = """
    UPDATE sectors
    SET assigned_formula_id = NULL
    WHERE assigned_formula_id IS NOT NULL
"""

# Reset-all-to-global, pinning variant: every company and sector points at $1
ASSIGN_ALL_COMPANIES = """
    UPDATE companies
    SET assigned_formula_id = $1, updated_at = NOW()
    WHERE assigned_formula_id IS DISTINCT FROM $1
"""

ASSIGN_ALL_SECTORS = """
    UPDATE sectors
    SET assigned_formula_id = $1
    WHERE assigned_formula_id IS DISTINCT FROM $1
"""

DELETE_SIGNALS_FOR_FORMULA = """
    DELETE FROM signals WHERE formula_id = $1
"""
