"""
Tests for the SQL snapshot transformer.
"""

import gzip
import re

import pytest

from supamigrate.core.exceptions import TransformError
from supamigrate.database.stream import DumpStream
from supamigrate.database.transform import (
    RoleMapping,
    RuleCategory,
    SqlTransformer,
    TransformAction,
    TransformMode,
    TransformRule,
    check_transformable,
)


def transform(text: str, mode: TransformMode = TransformMode.PROJECT_TO_PROJECT) -> str:
    return SqlTransformer(mode).transform_text(text)


class TestSqlTransformer:
    """Test rule application per statement."""

    def test_managed_schema_statements_commented_out(self):
        """Test DROP/CREATE of auth and storage schemas never replay."""
        out = transform('DROP SCHEMA IF EXISTS "auth" CASCADE;\nCREATE SCHEMA "storage";\nCREATE SCHEMA "app";\n')
        assert '-- DROP SCHEMA IF EXISTS "auth" CASCADE;\n' in out
        assert '-- CREATE SCHEMA "storage";\n' in out
        assert 'CREATE SCHEMA "app";\n' in out
        assert "-- CREATE SCHEMA \"app\"" not in out

    def test_owner_rewritten_to_postgres(self):
        """Test ownership by the admin role moves to postgres."""
        out = transform('ALTER TABLE "public"."users" OWNER TO "supabase_admin";\n')
        assert out == 'ALTER TABLE "public"."users" OWNER TO "postgres";\n'

    def test_owner_unknown_role_rewritten(self):
        """Test ownership by a role the target lacks moves to postgres."""
        assert transform("ALTER VIEW v OWNER TO report_owner;\n") == "ALTER VIEW v OWNER TO postgres;\n"

    def test_owner_known_role_kept(self):
        """Test ownership by a platform role is kept."""
        text = 'ALTER FUNCTION "public"."f"() OWNER TO "authenticated";\n'
        assert transform(text) == text

    def test_create_extension_made_idempotent(self):
        """Test CREATE EXTENSION gains IF NOT EXISTS."""
        out = transform('CREATE EXTENSION "pg_graphql" WITH SCHEMA "graphql";\n')
        assert out == 'CREATE EXTENSION IF NOT EXISTS "pg_graphql" WITH SCHEMA "graphql";\n'

    def test_existing_if_not_exists_untouched(self):
        """Test already idempotent extension statements pass through."""
        text = 'CREATE EXTENSION IF NOT EXISTS "pgcrypto" WITH SCHEMA "extensions";\n'
        assert transform(text) == text

    def test_extension_drop_and_comment_commented_out(self):
        """Test DROP EXTENSION and COMMENT ON EXTENSION are disabled."""
        out = transform('DROP EXTENSION IF EXISTS "pg_net";\nCOMMENT ON EXTENSION "pg_net" IS \'net\';\n')
        assert all(line.startswith("-- ") for line in out.splitlines())

    def test_role_ddl_commented_out(self):
        """Test role creation is never replayed."""
        out = transform('CREATE ROLE "legacy_reporting";\nALTER ROLE "legacy_reporting" SET search_path = public;\n')
        assert all(line.startswith("-- ") for line in out.splitlines())

    def test_grant_to_known_role_kept(self):
        """Test grants to platform roles replay unchanged."""
        text = 'GRANT ALL ON TABLE "public"."users" TO "anon";\n'
        assert transform(text) == text

    def test_grant_to_unknown_role_commented_out(self):
        """Test grants to roles the target lacks are disabled."""
        out = transform('GRANT SELECT ON TABLE "public"."users" TO "anon", "legacy_reporting";\n')
        assert out.startswith("-- GRANT SELECT")

    def test_grant_to_admin_role_remapped(self):
        """Test grants naming the admin role are remapped."""
        out = transform('GRANT ALL ON SCHEMA "public" TO "supabase_admin" WITH GRANT OPTION;\n')
        assert out == 'GRANT ALL ON SCHEMA "public" TO "postgres" WITH GRANT OPTION;\n'

    def test_revoke_from_public_kept(self):
        """Test REVOKE ... FROM PUBLIC is kept."""
        text = 'REVOKE ALL ON FUNCTION "public"."f"() FROM PUBLIC;\n'
        assert transform(text) == text

    def test_role_membership_grant(self):
        """Test GRANT role TO role is checked on both sides."""
        assert transform("GRANT legacy_reporting TO authenticated;\n").startswith("-- ")
        assert transform("GRANT supabase_admin TO authenticator;\n") == "GRANT postgres TO authenticator;\n"

    def test_admin_default_privileges_commented_out(self):
        """Test default privileges for the admin role never replay."""
        out = transform(
            'ALTER DEFAULT PRIVILEGES FOR ROLE "supabase_admin" IN SCHEMA "public" GRANT ALL ON TABLES TO "postgres";\n'
        )
        assert out.startswith("-- ALTER DEFAULT PRIVILEGES")

    def test_statement_text_in_literals_not_matched(self):
        """Test keywords inside data never trigger rules."""
        text = "INSERT INTO notes VALUES ('CREATE ROLE x; DROP SCHEMA auth;');\n"
        assert transform(text) == text

    def test_multiline_statement_commented_line_by_line(self):
        """Test every line of a disabled statement is commented out."""
        out = transform('GRANT SELECT\n  ON TABLE "t"\n  TO "ghost";\n')
        assert out == '-- GRANT SELECT\n--   ON TABLE "t"\n--   TO "ghost";\n'

    def test_copy_data_passes_through(self):
        """Test COPY rows are never rewritten."""
        text = 'COPY "public"."t" ("sql") FROM stdin;\nCREATE ROLE evil;\n\\.\n'
        assert transform(text) == text

    def test_full_dump(self, sample_dump: str):
        """Test the sample dump end to end."""
        transformer = SqlTransformer(TransformMode.PROJECT_TO_PROJECT)
        out = transformer.transform_text(sample_dump)

        assert '-- DROP SCHEMA IF EXISTS "auth" CASCADE;' in out
        assert 'OWNER TO "postgres";' in out
        assert '"supabase_admin";' not in out.replace("-- ", "")
        assert 'CREATE EXTENSION IF NOT EXISTS "pg_graphql"' in out
        assert "2\tbob; robert\n" in out
        assert 'GRANT ALL ON TABLE "public"."users" TO "anon";' in out
        assert '-- GRANT ALL ON TABLE "public"."users" TO "legacy_reporting";' in out
        assert '-- CREATE ROLE "legacy_reporting";' in out
        assert "NEW.updated_at := now();" in out

        assert transformer.stats.rewritten == 2
        assert transformer.stats.commented_out == 6
        assert transformer.stats.rule_hits["object_owner"] == 1
        assert transformer.stats.rule_hits["grant_revoke"] == 1

    @pytest.mark.parametrize("mode", list(TransformMode))
    def test_transform_is_idempotent(self, sample_dump: str, mode: TransformMode):
        """Test a second pass over transformed output changes nothing."""
        once = transform(sample_dump, mode)
        assert transform(once, mode) == once

    def test_archive_mode_keeps_project_specific_statements(self, sample_dump: str):
        """Test project_to_archive only removes what can never replay."""
        out = transform(sample_dump, TransformMode.PROJECT_TO_ARCHIVE)
        assert '-- CREATE SCHEMA "auth";' in out
        assert 'OWNER TO "supabase_admin";' in out
        assert 'CREATE EXTENSION "pg_graphql"' in out
        assert 'CREATE ROLE "legacy_reporting";' in out
        assert "-- CREATE ROLE" not in out

    def test_archive_then_project_equals_direct(self, sample_dump: str):
        """Test archiving then restoring matches a direct project migration."""
        archived = transform(sample_dump, TransformMode.PROJECT_TO_ARCHIVE)
        restored = transform(archived, TransformMode.ARCHIVE_TO_PROJECT)
        assert restored == transform(sample_dump, TransformMode.PROJECT_TO_PROJECT)

    def test_first_matching_rule_of_category_wins(self):
        """Test rules are evaluated by category, first match wins."""
        rules = [
            TransformRule(
                name="first",
                category=RuleCategory.ROLES,
                pattern=re.compile(r"^\s*GRANT\b", re.IGNORECASE),
                action=TransformAction.KEEP,
            ),
            TransformRule(
                name="second",
                category=RuleCategory.ROLES,
                pattern=re.compile(r"^\s*GRANT\b", re.IGNORECASE),
                action=TransformAction.COMMENT_OUT,
            ),
        ]
        transformer = SqlTransformer(TransformMode.PROJECT_TO_PROJECT, rules=rules)
        assert transformer.transform_text("GRANT x TO y;\n") == "GRANT x TO y;\n"

    def test_custom_role_mapping(self):
        """Test a role mapping with extra known roles."""
        roles = RoleMapping(known_roles=frozenset({"postgres", "reporting"}))
        transformer = SqlTransformer(TransformMode.PROJECT_TO_PROJECT, roles=roles)
        text = 'GRANT SELECT ON TABLE "t" TO "reporting";\n'
        assert transformer.transform_text(text) == text

    def test_unparseable_grant_raises(self):
        """Test a GRANT without grantee clause is a transform error."""
        with pytest.raises(TransformError):
            transform("GRANT ALL;\n")


class TestTransformStream:
    """Test streaming transformation of dump files."""

    def test_transform_stream_compressed(self, tmp_path, sample_dump: str):
        """Test transforming into a gzip file records the applied mode."""
        source = tmp_path / "raw.sql"
        source.write_text(sample_dump, encoding="utf-8")
        transformer = SqlTransformer(TransformMode.PROJECT_TO_ARCHIVE)
        result = transformer.transform_stream(DumpStream.from_path(source), tmp_path / "database.sql.gz")

        assert result.compressed is True
        assert result.transform_mode == TransformMode.PROJECT_TO_ARCHIVE
        with gzip.open(result.path, "rt", encoding="utf-8") as f:
            assert '-- CREATE SCHEMA "auth";' in f.read()

    def test_partial_output_removed_on_error(self, tmp_path):
        """Test a failed transform leaves no output file behind."""
        source = tmp_path / "raw.sql"
        source.write_text("SELECT 1;\nCREATE FUNCTION f() AS $$\n", encoding="utf-8")
        output = tmp_path / "out.sql"
        with pytest.raises(TransformError):
            SqlTransformer(TransformMode.PROJECT_TO_PROJECT).transform_stream(DumpStream.from_path(source), output)
        assert not output.exists()

    def test_refuses_double_transform(self, tmp_path):
        """Test the same mode is never applied twice to a stream."""
        stream = DumpStream(path=tmp_path / "x.sql", transform_mode=TransformMode.PROJECT_TO_PROJECT)
        with pytest.raises(TransformError):
            SqlTransformer(TransformMode.PROJECT_TO_PROJECT).transform_stream(stream, tmp_path / "y.sql")

    def test_check_transformable(self):
        """Test which stacked transforms are allowed."""
        check_transformable(None, TransformMode.PROJECT_TO_PROJECT)
        check_transformable(TransformMode.PROJECT_TO_ARCHIVE, TransformMode.ARCHIVE_TO_PROJECT)
        with pytest.raises(TransformError):
            check_transformable(TransformMode.PROJECT_TO_PROJECT, TransformMode.ARCHIVE_TO_PROJECT)
