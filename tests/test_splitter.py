"""
Tests for the statement splitter.
"""

import pytest

from supamigrate.core.exceptions import TransformError
from supamigrate.database.splitter import StatementKind, StatementSplitter, split_statements


def split(text: str):
    return list(split_statements(text.splitlines(keepends=True)))


def sql_texts(text: str):
    return [s.text for s in split(text) if s.is_sql]


class TestStatementSplitter:
    """Test splitting plain-text dumps into statements."""

    def test_simple_statements(self):
        """Test one statement per line."""
        assert sql_texts("SELECT 1;\nSELECT 2;\n") == ["SELECT 1;\n", "SELECT 2;\n"]

    def test_two_statements_on_one_line(self):
        """Test a line holding two statements is split in two."""
        assert sql_texts("SELECT 1; SELECT 2;\n") == ["SELECT 1;\n", "SELECT 2;\n"]

    def test_multiline_statement(self):
        """Test a statement spanning lines keeps its line number."""
        statements = split("\nCREATE TABLE t (\n  id int\n);\n")
        sql = [s for s in statements if s.is_sql]
        assert len(sql) == 1
        assert sql[0].text == "CREATE TABLE t (\n  id int\n);\n"
        assert sql[0].line_number == 2

    def test_semicolon_in_string_literal(self):
        """Test semicolons inside string literals do not end a statement."""
        assert sql_texts("INSERT INTO t VALUES ('a;b', 'it''s; ok');\n") == [
            "INSERT INTO t VALUES ('a;b', 'it''s; ok');\n"
        ]

    def test_escape_string_literal(self):
        """Test backslash-escaped quotes in E'' strings."""
        text = "SELECT E'it\\'s; still a string';\nSELECT 2;\n"
        assert len(sql_texts(text)) == 2

    def test_backslash_in_standard_string(self):
        """Test a backslash in a standard string does not escape the closing quote."""
        text = "SELECT 'C:\\';\nSELECT 2;\n"
        assert sql_texts(text) == ["SELECT 'C:\\';\n", "SELECT 2;\n"]

    def test_semicolon_in_quoted_identifier(self):
        """Test semicolons inside quoted identifiers."""
        assert sql_texts('CREATE TABLE "we;ird" ("a""b;" int);\n') == ['CREATE TABLE "we;ird" ("a""b;" int);\n']

    def test_dollar_quoted_body(self):
        """Test function bodies in $$ quotes stay in one statement."""
        text = (
            "CREATE FUNCTION f() RETURNS int AS $$\n"
            "BEGIN\n"
            "  RETURN 1;\n"
            "END;\n"
            "$$ LANGUAGE plpgsql;\n"
            "SELECT 2;\n"
        )
        texts = sql_texts(text)
        assert len(texts) == 2
        assert texts[0].endswith("$$ LANGUAGE plpgsql;\n")

    def test_tagged_dollar_quote(self):
        """Test tagged dollar quotes ignore inner untagged delimiters."""
        text = "SELECT $body$ a $$ ; b $body$;\nSELECT 2;\n"
        assert sql_texts(text) == ["SELECT $body$ a $$ ; b $body$;\n", "SELECT 2;\n"]

    def test_positional_parameter_is_not_dollar_quote(self):
        """Test $1 style parameters are not taken for dollar quotes."""
        assert len(sql_texts("PREPARE p AS SELECT $1;\nSELECT 2;\n")) == 2

    def test_nested_block_comment(self):
        """Test nested block comments hide semicolons."""
        text = "/* outer /* inner; */ still; */ SELECT 1;\nSELECT 2;\n"
        texts = sql_texts(text)
        assert len(texts) == 2
        assert texts[0].startswith("/* outer")

    def test_trailing_line_comment_stays_with_statement(self):
        """Test a trailing comment after the terminator belongs to the statement."""
        assert sql_texts("SELECT 1; -- done; really\n") == ["SELECT 1; -- done; really\n"]

    def test_line_comment_hides_semicolon(self):
        """Test a line comment inside a statement does not terminate it."""
        text = "SELECT 1 -- not here;\n  + 1;\n"
        assert sql_texts(text) == [text]

    def test_comment_and_blank_lines(self):
        """Test comment lines and blank lines become COMMENT statements."""
        statements = split("-- header\n\nSELECT 1;\n")
        assert [s.kind for s in statements] == [StatementKind.COMMENT, StatementKind.COMMENT, StatementKind.SQL]

    def test_meta_command(self):
        """Test psql meta commands are their own statements."""
        statements = split("\\connect postgres\nSELECT 1;\n")
        assert statements[0].kind == StatementKind.META
        assert statements[1].is_sql

    def test_copy_data_block(self):
        """Test COPY data lines are passed through untouched."""
        text = (
            'COPY "public"."t" ("id", "note") FROM stdin;\n'
            "1\ta;b\n"
            "2\t'unbalanced\n"
            "\\.\n"
            "SELECT 1;\n"
        )
        statements = split(text)
        kinds = [s.kind for s in statements]
        assert kinds == [StatementKind.SQL, StatementKind.COPY_DATA, StatementKind.SQL]
        assert statements[1].text == "1\ta;b\n2\t'unbalanced\n\\.\n"

    def test_output_reproduces_input(self):
        """Test concatenating the statements yields the original text."""
        text = "-- c\nSELECT 1;\n\nCREATE TABLE t (\n  a text DEFAULT ';'\n);\n"
        assert "".join(s.text for s in split(text)) == text

    def test_unterminated_dollar_quote(self):
        """Test a dump ending inside a dollar-quoted body is an error."""
        with pytest.raises(TransformError) as exc_info:
            split("SELECT 1;\nCREATE FUNCTION f() AS $$\nBEGIN\n")
        assert exc_info.value.line_number == 2
        assert "dollar-quoted" in str(exc_info.value)

    def test_unterminated_statement(self):
        """Test a dump ending mid-statement is an error."""
        with pytest.raises(TransformError):
            split("SELECT 1;\nCREATE TABLE t (\n  id int\n")

    def test_unterminated_copy(self):
        """Test a COPY block without terminator is an error."""
        with pytest.raises(TransformError) as exc_info:
            split("COPY t FROM stdin;\n1\n2\n")
        assert "COPY" in str(exc_info.value)

    def test_incremental_feed(self):
        """Test feeding line by line returns statements as they complete."""
        splitter = StatementSplitter()
        assert splitter.feed("SELECT\n") == []
        assert splitter.in_open_construct is False
        completed = splitter.feed("1;\n")
        assert [s.text for s in completed] == ["SELECT\n1;\n"]
        assert splitter.finish() == []
