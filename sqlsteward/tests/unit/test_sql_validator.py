from __future__ import annotations

import pytest

from sqlsteward.domain.state import StatementPurpose, ValidationContext, Verdict
from sqlsteward.services.sql_validator import (
    SqlValidator,
    UnterminatedLiteralError,
    is_mutating,
    tokenize,
)
from sqlsteward.services.telemetry import counter_value


IN_TXN = ValidationContext(in_transaction=True)
PROC_DDL = ValidationContext(in_transaction=True, purpose=StatementPurpose.PROCEDURE_DDL)


@pytest.fixture
def validator() -> SqlValidator:
    return SqlValidator(require_transactions=True)


@pytest.mark.parametrize(
    "statement",
    [
        "DROP TABLE Orders",
        "drop table Orders",
        "UPDATE Orders SET Status = 'x'; TRUNCATE TABLE Orders",
        "SELECT * FROM OPENROWSET('SQLNCLI', 'x', 'y')",
        "EXEC xp_cmdshell 'dir'",
        "ALTER   DATABASE shop SET SINGLE_USER",
    ],
)
def test_denylisted_keyword_outside_literals_is_blocked(validator: SqlValidator, statement: str) -> None:
    result = validator.validate(statement, IN_TXN)
    assert result.verdict == Verdict.BLOCKED


@pytest.mark.parametrize(
    "statement",
    [
        "UPDATE Orders SET Status = 'DROP TABLE pending' WHERE Id = :id",
        "INSERT INTO Notes (Body) VALUES (N'please truncate later')",
        "UPDATE Orders SET Status = 'it''s DROP time' WHERE Id = :id",
        "UPDATE Orders SET Status = :status -- DROP TABLE Orders\nWHERE Id = :id",
        "UPDATE Orders /* TRUNCATE */ SET Status = :status WHERE Id = :id",
        'UPDATE "Drop" SET Status = :status',
        "UPDATE [Truncate] SET Status = :status",
    ],
)
def test_denylisted_keyword_inside_literals_is_allowed(validator: SqlValidator, statement: str) -> None:
    result = validator.validate(statement, IN_TXN)
    assert result.verdict == Verdict.ALLOWED, result.reason


def test_denylist_matches_whole_words_only(validator: SqlValidator) -> None:
    assert validator.validate("UPDATE Orders SET Dropped = 1 WHERE Id = :id", IN_TXN).allowed


def test_unterminated_literal_is_blocked(validator: SqlValidator) -> None:
    result = validator.validate("UPDATE Orders SET Status = 'open WHERE Id = 1", IN_TXN)
    assert result.verdict == Verdict.BLOCKED
    assert result.rule == "unterminated_literal"
    assert validator.validate("UPDATE Orders SET Status = 1 /* never closed", IN_TXN).rule == "unterminated_literal"


def test_empty_statement_is_blocked(validator: SqlValidator) -> None:
    assert validator.validate("  ;  -- nothing here", IN_TXN).rule == "empty_statement"


@pytest.mark.parametrize(
    ("statement", "rule"),
    [
        ("DELETE FROM Orders WHERE Id = :id OR 1=1", "tautology"),
        ("DELETE FROM Orders WHERE Name = :name OR 'a' = 'a'", "tautology"),
        ("UPDATE Orders SET Status = 'x' + :suffix WHERE Id = :id", "string_concatenation"),
        ("UPDATE Orders SET Status = :prefix || 'x' WHERE Id = :id", "string_concatenation"),
        ("EXEC('DELETE FROM Orders')", "dynamic_sql"),
        ("EXEC sp_executesql :stmt", "dynamic_sql"),
        ("UPDATE Orders SET Status = :s\nGO\nUPDATE Orders SET Status = :s", "batch_separator"),
        ("UPDATE Orders SET Status = :s; DELETE FROM Orders", "batch_separator"),
        ("CREATE PROCEDURE dbo.Sneaky AS SELECT 1", "statement_class"),
        ("CREATE LOGIN mallory WITH PASSWORD = :pw", "denylist"),
        ("SHUTDOWN WITH NOWAIT", "denylist"),
    ],
)
def test_injection_shaped_statements_are_blocked(validator: SqlValidator, statement: str, rule: str) -> None:
    result = validator.validate(statement, IN_TXN)
    assert result.verdict == Verdict.BLOCKED
    assert result.rule == rule


def test_trailing_semicolon_is_not_a_batch(validator: SqlValidator) -> None:
    assert validator.validate("UPDATE Orders SET Status = :s WHERE Id = :id;", IN_TXN).allowed


def test_or_between_different_operands_is_not_a_tautology(validator: SqlValidator) -> None:
    assert validator.validate("DELETE FROM Orders WHERE Id = :id OR CustomerId = 2", IN_TXN).allowed


def test_adhoc_ddl_on_tables_and_views_is_allowed(validator: SqlValidator) -> None:
    assert validator.validate("CREATE TABLE Staging (Id INTEGER)", IN_TXN).allowed
    assert validator.validate("CREATE INDEX ix_orders_customer ON Orders (CustomerId)", IN_TXN).allowed


def test_mutation_without_transaction_requires_one(validator: SqlValidator) -> None:
    result = validator.validate("UPDATE Orders SET Status = :s", ValidationContext(in_transaction=False))
    assert result.verdict == Verdict.REQUIRES_TRANSACTION
    assert result.rule == "require_transactions"
    # Reads never need a transaction.
    assert validator.validate("SELECT * FROM Orders", ValidationContext(in_transaction=False)).allowed


def test_blocked_takes_precedence_over_requires_transaction(validator: SqlValidator) -> None:
    result = validator.validate("DELETE FROM Orders WHERE 1=1 OR 1=1", ValidationContext(in_transaction=False))
    assert result.verdict == Verdict.BLOCKED


def test_policy_off_allows_unbound_mutation() -> None:
    validator = SqlValidator(require_transactions=False)
    assert validator.validate("UPDATE Orders SET Status = :s", ValidationContext(in_transaction=False)).allowed


def test_procedure_ddl_allows_header_and_multiple_statements(validator: SqlValidator) -> None:
    definition = (
        "CREATE OR ALTER PROCEDURE dbo.CloseOrders @CustomerId INT AS\n"
        "BEGIN\n"
        "  CREATE TABLE #ids (Id INT);\n"
        "  UPDATE Orders SET Status = 'closed' WHERE CustomerId = @CustomerId;\n"
        "END"
    )
    assert validator.validate(definition, PROC_DDL).allowed


@pytest.mark.parametrize(
    "definition",
    [
        "CREATE TABLE Orders2 (Id INT)",
        "CREATE PROCEDURE dbo.P AS CREATE VIEW v AS SELECT 1",
        "ALTER PROCEDURE dbo.P AS ALTER TABLE Orders ADD Extra INT",
    ],
)
def test_procedure_ddl_cannot_touch_other_objects(validator: SqlValidator, definition: str) -> None:
    result = validator.validate(definition, PROC_DDL)
    assert result.verdict == Verdict.BLOCKED
    assert result.rule == "procedure_scope"


@pytest.mark.parametrize(
    "definition",
    [
        "CREATE PROCEDURE dbo.X AS\nDECLARE @p sysname = N'xp_cmdshell'; EXEC @p 'whoami'",
        "CREATE PROCEDURE dbo.X @p NVARCHAR(100) AS\nBEGIN\n  EXECUTE @p\nEND",
    ],
)
def test_procedure_ddl_cannot_execute_variables(validator: SqlValidator, definition: str) -> None:
    result = validator.validate(definition, PROC_DDL)
    assert result.verdict == Verdict.BLOCKED
    assert result.rule == "dynamic_sql"


def test_procedure_ddl_cannot_assemble_strings(validator: SqlValidator) -> None:
    definition = "CREATE PROCEDURE dbo.X AS\nDECLARE @p sysname = N'xp_' + N'cmdshell'; SELECT @p"
    assert validator.validate(definition, PROC_DDL).rule == "string_concatenation"


def test_exec_capturing_return_code_is_allowed(validator: SqlValidator) -> None:
    definition = "CREATE PROCEDURE dbo.X AS\nDECLARE @rc INT; EXEC @rc = dbo.AuditOrders; SELECT @rc"
    assert validator.validate(definition, PROC_DDL).allowed


def test_blocked_statements_are_counted(validator: SqlValidator) -> None:
    validator.validate("DROP TABLE Orders", IN_TXN)
    validator.validate("TRUNCATE TABLE Orders", IN_TXN)
    assert counter_value("sql_blocked_total") == 2


def test_custom_denylist_replaces_default() -> None:
    validator = SqlValidator(denylist=["MERGE"], require_transactions=False)
    assert validator.validate("MERGE INTO Orders USING Staging ON 1 = 1 WHEN MATCHED THEN DELETE").rule == "denylist"
    assert validator.validate("DROP TABLE Orders").rule != "denylist"


def test_tokenize_separates_literals_and_comments() -> None:
    tokens = tokenize("SELECT 'a--b' AS x -- trailing\nFROM [My Table]")
    assert [(token.kind, token.value) for token in tokens] == [
        ("word", "SELECT"),
        ("string", "a--b"),
        ("word", "AS"),
        ("word", "x"),
        ("word", "FROM"),
        ("quoted", "My Table"),
    ]


def test_tokenize_keeps_variables_and_national_strings_whole() -> None:
    tokens = tokenize("EXEC @p N'it''s'")
    assert [(token.kind, token.value) for token in tokens] == [
        ("word", "EXEC"),
        ("word", "@p"),
        ("string", "it's"),
    ]


def test_tokenize_reports_unclosed_bracket_identifier() -> None:
    with pytest.raises(UnterminatedLiteralError):
        tokenize("UPDATE [Orders SET Status = 1")


def test_is_mutating_detects_cte_writes() -> None:
    assert is_mutating(tokenize("WITH doomed AS (SELECT Id FROM Orders) DELETE FROM Orders"))
    assert not is_mutating(tokenize("WITH recent AS (SELECT Id FROM Orders) SELECT * FROM recent"))
