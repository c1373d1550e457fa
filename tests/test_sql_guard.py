import pytest

from query_agent.core.sql_guard import (
    DANGEROUS_OPERATION,
    DISALLOWED_TABLE,
    INVALID_OPERATION,
    INVALID_SQL_INPUT,
    INVALID_TENANT_ID,
    MISSING_TENANT_FILTER,
    MULTI_STATEMENT,
    GuardViolation,
    extract_tables,
    guard_sql,
)

TENANT = "t1"


def assert_violation(sql, code, **kwargs):
    with pytest.raises(GuardViolation) as exc:
        guard_sql(sql, **kwargs)
    assert exc.value.code == code


class TestInput:
    @pytest.mark.parametrize("sql", ["", "   ", "\n\t", ";", "-- just a comment"])
    def test_empty_input_rejected(self, sql):
        assert_violation(sql, INVALID_SQL_INPUT)


class TestStatements:
    def test_trailing_semicolons_stripped(self):
        guarded = guard_sql("SELECT id FROM projects WHERE tenant_id = 't1';;  ", expected_tenant_id=TENANT)
        assert ";" not in guarded.sql
        assert guarded.sql.endswith("LIMIT 100")

    @pytest.mark.parametrize("sql", [
        "SELECT 1; SELECT 2",
        "SELECT id FROM projects; DROP TABLE projects",
        "SELECT id FROM projects WHERE tenant_id = 't1'; SELECT id FROM companies",
    ])
    def test_embedded_semicolon_rejected(self, sql):
        assert_violation(sql, MULTI_STATEMENT, expected_tenant_id=TENANT)

    def test_semicolon_inside_literal_allowed(self):
        guarded = guard_sql(
            "SELECT id FROM projects WHERE tenant_id = 't1' AND name = 'a;b'",
            expected_tenant_id=TENANT,
        )
        assert "'a;b'" in guarded.sql


class TestDangerousOperations:
    @pytest.mark.parametrize("sql", [
        "DROP TABLE projects",
        "DELETE FROM projects",
        "INSERT INTO projects (id) VALUES (1)",
        "UPDATE projects SET name = 'x'",
        "TRUNCATE TABLE projects",
        "ALTER TABLE projects ADD COLUMN x INT",
        "CREATE TABLE evil (id INT)",
        "GRANT ALL ON projects TO bob",
        "REVOKE ALL ON projects FROM bob",
        "EXEC sp_who",
        "SELECT * FROM information_schema.tables",
        "SELECT * FROM system.users",
        "SELECT id FROM projects WHERE tenant_id = 't1' OR 1=1",
        "SELECT id FROM projects UNION SELECT id FROM companies",
    ])
    def test_rejected(self, sql):
        assert_violation(sql, DANGEROUS_OPERATION, expected_tenant_id=TENANT)

    def test_keyword_hidden_in_comment_still_stripped(self):
        guarded = guard_sql(
            "SELECT id FROM projects /* harmless */ WHERE tenant_id = 't1' -- trailing",
            expected_tenant_id=TENANT,
        )
        assert "harmless" not in guarded.sql
        assert "trailing" not in guarded.sql

    def test_keyword_inside_string_value_allowed(self):
        guarded = guard_sql(
            "SELECT id FROM projects WHERE tenant_id = 't1' AND status = 'deleted'",
            expected_tenant_id=TENANT,
        )
        assert guarded.metadata.tables_used == ("projects",)


class TestSystemQueries:
    @pytest.mark.parametrize("sql", ["SELECT NOW()", "SELECT VERSION()", "SELECT CURRENT_DATE()"])
    def test_pass_without_tenant_check(self, sql):
        guarded = guard_sql(sql, expected_tenant_id=TENANT)
        assert guarded.metadata.tables_used == ()
        assert guarded.sql.endswith("LIMIT 100")

    def test_show_variables_not_limited(self):
        guarded = guard_sql("SHOW VARIABLES", expected_tenant_id=TENANT)
        assert guarded.sql == "SHOW VARIABLES"
        assert guarded.metadata.limit_applied is None


class TestOperation:
    @pytest.mark.parametrize("sql", ["EXPLAIN SELECT id FROM projects", "DESCRIBE projects", "CALL refresh()"])
    def test_non_select_rejected(self, sql):
        assert_violation(sql, INVALID_OPERATION)

    def test_with_allowed(self):
        guarded = guard_sql(
            "WITH active AS (SELECT id FROM projects WHERE tenant_id = 't1') SELECT COUNT(*) FROM active",
            expected_tenant_id=TENANT,
        )
        assert guarded.metadata.tables_used == ("projects",)


class TestTables:
    def test_extract_ordered_and_deduplicated(self):
        masked = (
            "SELECT p.id FROM projects p JOIN companies c ON c.id = p.contractor_id "
            "JOIN projects p2 ON p2.id = p.id"
        )
        assert extract_tables(masked) == ("projects", "companies")

    def test_cte_names_excluded(self):
        masked = "WITH a AS (SELECT id FROM projects), b AS (SELECT id FROM companies) SELECT * FROM a JOIN b"
        assert extract_tables(masked) == ("projects", "companies")

    def test_extract_function_is_not_a_table(self):
        masked = "SELECT EXTRACT(YEAR FROM submitted_date) AS y FROM projects"
        assert extract_tables(masked) == ("projects",)

    def test_subquery_from_is_a_table(self):
        masked = "SELECT * FROM (SELECT id FROM companies) x"
        assert extract_tables(masked) == ("companies",)

    def test_comma_separated_tables_extracted(self):
        masked = "SELECT p.id FROM projects p, companies AS c, addresses WHERE p.id = c.id"
        assert extract_tables(masked) == ("projects", "companies", "addresses")

    @pytest.mark.parametrize("sql", [
        "SELECT * FROM projects p, secret_table s WHERE p.tenant_id = 't1'",
        "SELECT * FROM projects p JOIN companies c ON c.id = p.contractor_id, secret_table s "
        "WHERE p.tenant_id = 't1' AND c.tenant_id = 't1'",
    ])
    def test_unknown_table_in_comma_list_rejected(self, sql):
        assert_violation(sql, DISALLOWED_TABLE, expected_tenant_id=TENANT)

    def test_parenthesized_table_rejected(self):
        assert_violation("SELECT * FROM (secret_table) WHERE tenant_id = 't1'", INVALID_OPERATION, expected_tenant_id=TENANT)

    def test_cte_shadowing_table_rejected(self):
        sql = "WITH projects AS (SELECT * FROM projects) SELECT name FROM projects WHERE tenant_id = 't1'"
        assert_violation(sql, INVALID_OPERATION, expected_tenant_id=TENANT)

    def test_unknown_table_rejected(self):
        assert_violation("SELECT * FROM users WHERE tenant_id = 't1'", DISALLOWED_TABLE, expected_tenant_id=TENANT)


class TestTenantFilter:
    def test_missing_filter_rejected(self):
        assert_violation("SELECT id FROM projects", MISSING_TENANT_FILTER, expected_tenant_id=TENANT)

    @pytest.mark.parametrize("sql", [
        "SELECT id FROM projects WHERE tenant_id = 't1'",
        "SELECT id FROM projects WHERE tenant_id='t1'",
        'SELECT id FROM projects WHERE tenant_id = "t1"',
        "SELECT p.id FROM projects p WHERE p.tenant_id = 't1'",
        "SELECT id FROM projects WHERE 't1' = tenant_id",
        "SELECT id FROM projects WHERE TENANT_ID = 't1'",
    ])
    def test_accepted_forms(self, sql):
        guarded = guard_sql(sql, expected_tenant_id=TENANT)
        assert guarded.metadata.tables_used == ("projects",)

    def test_other_tenant_rejected(self):
        assert_violation("SELECT id FROM projects WHERE tenant_id = 't2'", INVALID_TENANT_ID, expected_tenant_id=TENANT)

    def test_mixed_tenants_rejected(self):
        sql = (
            "SELECT p.id FROM projects p JOIN companies c ON c.id = p.contractor_id "
            "WHERE p.tenant_id = 't1' AND c.tenant_id = 't2'"
        )
        assert_violation(sql, INVALID_TENANT_ID, expected_tenant_id=TENANT)

    @pytest.mark.parametrize("sql", [
        "SELECT p.name, c.name FROM projects p JOIN companies c ON c.id = p.contractor_id "
        "WHERE p.tenant_id = 't1' AND c.tenant_id = 't1'",
        "SELECT p.name FROM projects p, companies c WHERE p.tenant_id = 't1' AND c.tenant_id = 't1'",
        "SELECT projects.name FROM projects JOIN companies ON companies.id = projects.contractor_id "
        "WHERE 't1' = companies.tenant_id AND projects.tenant_id = 't1'",
        "SELECT name FROM projects WHERE tenant_id = 't1' AND contractor_id IN "
        "(SELECT id FROM companies WHERE tenant_id = 't1')",
        "SELECT id FROM projects WHERE (tenant_id = 't1' AND status = 'active')",
        "SELECT id FROM projects WHERE tenant_id = 't1' AND (status = 'active' OR status = 'planning')",
        "SELECT id FROM projects WHERE submitted_date BETWEEN '2024-01-01' AND '2024-12-31' AND tenant_id = 't1'",
    ])
    def test_every_table_filtered_accepted(self, sql):
        guard_sql(sql, expected_tenant_id=TENANT)

    @pytest.mark.parametrize("sql", [
        # Joined table left unscoped
        "SELECT c.name FROM projects p JOIN companies c ON c.id IS NOT NULL "
        "WHERE p.tenant_id = 't1' AND c.name = 'SECRET-CO'",
        "SELECT p.name FROM projects p, companies c WHERE p.tenant_id = 't1'",
        # Unqualified filter next to two tables
        "SELECT p.name FROM projects p JOIN companies c ON c.id = p.contractor_id WHERE tenant_id = 't1'",
        # Filter only in a LEFT JOIN condition
        "SELECT p.name FROM projects p LEFT JOIN companies c ON c.id = p.contractor_id AND c.tenant_id = 't1' "
        "WHERE p.tenant_id = 't1'",
        # Subquery table left unscoped
        "SELECT name FROM projects WHERE tenant_id = 't1' AND contractor_id IN (SELECT id FROM companies)",
    ])
    def test_unfiltered_table_rejected(self, sql):
        assert_violation(sql, MISSING_TENANT_FILTER, expected_tenant_id=TENANT)

    @pytest.mark.parametrize("sql", [
        "SELECT name FROM projects WHERE name = 'SECRET-PROJ' OR name = 'tenant_id = t1'",
        "SELECT name FROM projects WHERE name = \"tenant_id = 't1'\"",
        "SELECT name AS `tenant_id = 't1'` FROM projects",
        "SELECT name FROM projects # WHERE tenant_id = 't1'",
    ])
    def test_filter_text_inside_quotes_or_comments_ignored(self, sql):
        assert_violation(sql, MISSING_TENANT_FILTER, expected_tenant_id=TENANT)

    @pytest.mark.parametrize("sql", [
        "SELECT id FROM projects WHERE tenant_id = 't1' OR 2 > 1",
        "SELECT id FROM projects WHERE status = 'active' OR tenant_id = 't1'",
        "SELECT id FROM projects WHERE status = 'active' || tenant_id = 't1'",
        "SELECT id FROM projects WHERE NOT (tenant_id = 't1')",
        "SELECT id FROM projects WHERE tenant_id = 't1' = 0",
        "SELECT id FROM projects WHERE value BETWEEN 1 AND tenant_id = 't1'",
        "SELECT tenant_id = 't1' AS mine, id FROM projects",
        "SELECT id FROM projects WHERE tenant_id = t1",
    ])
    def test_filter_that_does_not_restrict_rows_rejected(self, sql):
        assert_violation(sql, MISSING_TENANT_FILTER, expected_tenant_id=TENANT)

    def test_backslash_rejected(self):
        sql = "SELECT id FROM projects WHERE tenant_id = 't1' AND name = 'a\\' OR 2 > 1 -- '"
        assert_violation(sql, DANGEROUS_OPERATION, expected_tenant_id=TENANT)

    def test_no_expected_tenant_skips_check(self):
        guarded = guard_sql("SELECT id FROM projects")
        assert guarded.sql == "SELECT id FROM projects LIMIT 100"


class TestLimit:
    def test_limit_appended(self):
        guarded = guard_sql("SELECT id FROM projects WHERE tenant_id = 't1'", max_rows=50, expected_tenant_id=TENANT)
        assert guarded.sql.endswith("LIMIT 50")
        assert guarded.metadata.limit_applied == 50

    def test_larger_limit_clamped(self):
        guarded = guard_sql("SELECT id FROM projects WHERE tenant_id = 't1' LIMIT 5000", expected_tenant_id=TENANT)
        assert guarded.sql.endswith("LIMIT 100")
        assert guarded.metadata.limit_applied == 100

    def test_smaller_limit_kept(self):
        guarded = guard_sql("SELECT id FROM projects WHERE tenant_id = 't1' LIMIT 10", expected_tenant_id=TENANT)
        assert guarded.sql.endswith("LIMIT 10")
        assert guarded.metadata.limit_applied == 10

    def test_offset_preserved(self):
        guarded = guard_sql(
            "SELECT id FROM projects WHERE tenant_id = 't1' LIMIT 500 OFFSET 20",
            expected_tenant_id=TENANT,
        )
        assert guarded.sql.endswith("LIMIT 100 OFFSET 20")

    def test_offset_comma_form_clamped(self):
        guarded = guard_sql("SELECT id FROM projects WHERE tenant_id = 't1' LIMIT 10, 500", expected_tenant_id=TENANT)
        assert guarded.sql.endswith("WHERE tenant_id = 't1' LIMIT 10, 100")
        assert guarded.sql.count("LIMIT") == 1
        assert guarded.metadata.limit_applied == 100

    def test_limit_inside_literal_not_clamped(self):
        guarded = guard_sql("SELECT id FROM projects WHERE tenant_id = 't1' AND name = 'LIMIT 5'", expected_tenant_id=TENANT)
        assert guarded.sql.endswith("name = 'LIMIT 5' LIMIT 100")
