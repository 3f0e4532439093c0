"""Heuristic SQL statement validator.

This is defense in depth, not a proof of safety: statements are tokenized with sqlglot's T-SQL
tokenizer, which separates string literals and drops comments, then checked against a keyword
denylist and a handful of injection-shaped patterns. The real injection defense is that values
always travel as bound parameters at the execution boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable

from sqlglot.dialects.dialect import Dialect
from sqlglot.errors import TokenError
from sqlglot.tokens import Token as SqlglotToken
from sqlglot.tokens import TokenType

from sqlsteward.core.config import Settings, get_settings
from sqlsteward.domain.state import (
    StatementPurpose,
    ValidationContext,
    ValidationResult,
    Verdict,
)
from sqlsteward.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_TSQL = Dialect.get_or_raise("tsql")
# T-SQL commands (EXEC, END, ...) make sqlglot fold the rest of the statement into one string.
_COMMAND_TYPES = frozenset(_TSQL.tokenizer_class.COMMANDS)
_STRING_TYPES = frozenset(
    {
        TokenType.STRING,
        TokenType.NATIONAL_STRING,
        TokenType.RAW_STRING,
        TokenType.BIT_STRING,
        TokenType.HEX_STRING,
        TokenType.BYTE_STRING,
        TokenType.HEREDOC_STRING,
        TokenType.UNICODE_STRING,
    }
)
_SIGILS = frozenset({"@", "@@", "#", "##"})
_WORD_START = "_@#$"

DML_VERBS = frozenset({"INSERT", "UPDATE", "DELETE", "MERGE"})
_ADHOC_LEADING = frozenset({"INSERT", "UPDATE", "DELETE", "MERGE", "WITH", "SELECT", "CREATE", "ALTER"})
_ADHOC_DDL_OBJECTS = frozenset({"TABLE", "VIEW", "INDEX", "UNIQUE", "CLUSTERED", "NONCLUSTERED"})
_PROCEDURE_WORDS = frozenset({"PROC", "PROCEDURE"})
_SCOPED_DDL_OBJECTS = frozenset(
    {
        "PROC",
        "PROCEDURE",
        "FUNCTION",
        "TRIGGER",
        "VIEW",
        "TABLE",
        "INDEX",
        "SCHEMA",
        "DATABASE",
        "USER",
        "LOGIN",
        "ROLE",
        "SYNONYM",
        "TYPE",
    }
)
_MULTI_STATEMENT_PURPOSES = frozenset({StatementPurpose.PROCEDURE_DDL, StatementPurpose.PROCEDURE_INVOKE})


class UnterminatedLiteralError(ValueError):
    pass


@dataclass(frozen=True)
class Token:
    # kind: word, quoted, string, number, op
    kind: str
    value: str
    line: int

    @property
    def upper(self) -> str:
        return self.value.upper()

    def is_word(self, *values: str) -> bool:
        return self.kind == "word" and self.upper in values

    def is_op(self, value: str) -> bool:
        return self.kind == "op" and self.value == value


def tokenize(statement: str) -> list[Token]:
    """Split a statement into tokens with comments dropped and literals isolated."""
    return _convert(statement, _scan(statement), line_offset=0)


def _scan(statement: str) -> list[SqlglotToken]:
    try:
        raw = _TSQL.tokenize(statement)
    except TokenError as exc:
        raise UnterminatedLiteralError(str(exc)) from exc
    # An unclosed block comment swallows the tail without a tokenizer error.
    tail = statement[raw[-1].end + 1 :] if raw else statement
    if _opens_block_comment(tail):
        raise UnterminatedLiteralError("/*")
    return raw


def _opens_block_comment(tail: str) -> bool:
    depth = 0
    index = 0
    while index < len(tail):
        if depth == 0 and tail.startswith("--", index):
            newline = tail.find("\n", index)
            if newline < 0:
                return False
            index = newline + 1
        elif tail.startswith("/*", index):
            depth += 1
            index += 2
        elif depth and tail.startswith("*/", index):
            depth -= 1
            index += 2
        else:
            index += 1
    return depth > 0


def _folded_command(statement: str, command: SqlglotToken, following: SqlglotToken) -> bool:
    # The folded remainder is raw source text sitting right after the command keyword.
    if command.token_type not in _COMMAND_TYPES or following.token_type != TokenType.STRING:
        return False
    rest = statement[command.end + 1 :].lstrip()
    return bool(following.text) and rest.startswith(following.text)


def _convert(statement: str, raw: list[SqlglotToken], *, line_offset: int) -> list[Token]:
    tokens: list[Token] = []
    index = 0
    while index < len(raw):
        item = raw[index]
        following = raw[index + 1] if index + 1 < len(raw) else None
        line = item.line + line_offset
        if following is not None and _folded_command(statement, item, following):
            tokens.append(Token("word", item.text, line))
            start = statement.index(following.text, item.end + 1)
            nested_offset = line_offset + statement.count("\n", 0, start)
            tokens.extend(_convert(following.text, _scan(following.text), line_offset=nested_offset))
            index += 2
            continue
        if (
            following is not None
            and item.text in _SIGILS
            and following.start == item.end + 1
            and _kind(following) == "word"
        ):
            tokens.append(Token("word", item.text + following.text, line))
            index += 2
            continue
        kind = _kind(item)
        if kind == "word":
            # Multi-word keywords such as ORDER BY arrive as one token.
            tokens.extend(Token("word", part, line) for part in item.text.split())
        else:
            tokens.append(Token(kind, item.text, line))
        index += 1
    return tokens


def _kind(item: SqlglotToken) -> str:
    if item.token_type in _STRING_TYPES:
        return "string"
    if item.token_type == TokenType.IDENTIFIER:
        return "quoted"
    if item.token_type == TokenType.NUMBER:
        return "number"
    first = item.text[:1]
    if first.isalpha() or (first and first in _WORD_START):
        return "word"
    return "op"


def _compile_denylist(entries: Iterable[str]) -> list[tuple[str, ...]]:
    compiled: list[tuple[str, ...]] = []
    for entry in entries:
        words = tuple(part.upper() for part in entry.split() if part)
        if words:
            compiled.append(words)
    return compiled


def is_mutating(tokens: list[Token]) -> bool:
    words = [token for token in tokens if token.kind == "word"]
    if not words:
        return False
    if words[0].upper in DML_VERBS:
        return True
    return words[0].upper == "WITH" and any(token.upper in DML_VERBS for token in words)


class SqlValidator:
    def __init__(
        self,
        *,
        denylist: Iterable[str] | None = None,
        require_transactions: bool = True,
    ) -> None:
        self._denylist = _compile_denylist(denylist if denylist is not None else get_settings().sql_denylist)
        self._require_transactions = require_transactions

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SqlValidator":
        settings = settings or get_settings()
        return cls(denylist=settings.sql_denylist, require_transactions=settings.require_transactions)

    @property
    def require_transactions(self) -> bool:
        return self._require_transactions

    def validate(self, statement: str, context: ValidationContext | None = None) -> ValidationResult:
        context = context or ValidationContext()
        result = self._classify(statement or "", context)
        if result.verdict == Verdict.BLOCKED:
            increment_counter("sql_blocked_total")
            logger.info("sql_blocked rule=%s purpose=%s", result.rule, context.purpose.value)
        return result

    def _classify(self, statement: str, context: ValidationContext) -> ValidationResult:
        try:
            tokens = tokenize(statement)
        except UnterminatedLiteralError:
            return _blocked("unterminated_literal", "Statement has an unterminated string, identifier, or comment")
        significant = [token for token in tokens if not token.is_op(";")]
        if not significant:
            return _blocked("empty_statement", "Statement is empty")

        for check in (
            self._check_denylist,
            _check_batch_separators,
            _check_dynamic_sql,
            _check_tautology,
        ):
            blocked = check(tokens, context)
            if blocked is not None:
                return blocked

        if context.purpose == StatementPurpose.PROCEDURE_DDL:
            blocked = _check_string_concatenation(tokens) or _check_procedure_scope(tokens)
        elif context.purpose == StatementPurpose.ADHOC_WRITE:
            blocked = _check_string_concatenation(tokens) or _check_adhoc_statement_class(significant)
        elif context.purpose == StatementPurpose.PROCEDURE_INVOKE:
            blocked = _check_string_concatenation(tokens)
        else:
            blocked = None
        if blocked is not None:
            return blocked

        if self._require_transactions and not context.in_transaction and is_mutating(significant):
            return ValidationResult(
                verdict=Verdict.REQUIRES_TRANSACTION,
                rule="require_transactions",
                reason="Mutating statements must run inside an explicit transaction",
            )
        return ValidationResult(verdict=Verdict.ALLOWED)

    def _check_denylist(self, tokens: list[Token], _context: ValidationContext) -> ValidationResult | None:
        for index, token in enumerate(tokens):
            if token.kind != "word":
                continue
            for words in self._denylist:
                window = tokens[index : index + len(words)]
                if len(window) == len(words) and all(
                    candidate.kind == "word" and candidate.upper == word
                    for candidate, word in zip(window, words)
                ):
                    return _blocked("denylist", f"Keyword {' '.join(words)} is not permitted")
        return None


def _blocked(rule: str, reason: str) -> ValidationResult:
    return ValidationResult(verdict=Verdict.BLOCKED, rule=rule, reason=reason)


def _check_batch_separators(tokens: list[Token], context: ValidationContext) -> ValidationResult | None:
    per_line: dict[int, list[Token]] = {}
    for token in tokens:
        per_line.setdefault(token.line, []).append(token)
    for line_tokens in per_line.values():
        first = line_tokens[0]
        rest = line_tokens[1:]
        if first.is_word("GO") and (not rest or (len(rest) == 1 and rest[0].kind == "number")):
            return _blocked("batch_separator", "GO batch separators are not permitted")
    if context.purpose in _MULTI_STATEMENT_PURPOSES:
        return None
    for index, token in enumerate(tokens):
        if token.is_op(";") and any(not later.is_op(";") for later in tokens[index + 1 :]):
            return _blocked("batch_separator", "Multiple statements in one request are not permitted")
    return None


def _check_dynamic_sql(tokens: list[Token], _context: ValidationContext) -> ValidationResult | None:
    for index, token in enumerate(tokens):
        if token.is_word("SP_EXECUTESQL"):
            return _blocked("dynamic_sql", "Dynamic SQL via sp_executesql is not permitted")
        if token.is_word("EXEC", "EXECUTE") and index + 1 < len(tokens) and tokens[index + 1].is_op("("):
            return _blocked("dynamic_sql", "Dynamic SQL via EXEC(...) is not permitted")
        if token.is_word("EXEC", "EXECUTE") and _executes_variable(tokens[index + 1 : index + 3]):
            return _blocked("dynamic_sql", "Dynamic SQL via EXEC @variable is not permitted")
    return None


def _executes_variable(following: list[Token]) -> bool:
    # EXEC @rc = dbo.Proc captures a return code; EXEC @sql runs whatever the variable holds.
    if not following or following[0].kind != "word" or not following[0].value.startswith("@"):
        return False
    return not (len(following) > 1 and following[1].is_op("="))


def _same_operand(left: Token, right: Token) -> bool:
    if left.kind != right.kind or left.kind == "op":
        return False
    if left.kind == "string":
        return left.value == right.value
    return left.upper == right.upper


def _check_tautology(tokens: list[Token], _context: ValidationContext) -> ValidationResult | None:
    for index, token in enumerate(tokens):
        if not token.is_word("OR"):
            continue
        window = tokens[index + 1 : index + 4]
        if len(window) == 3 and window[1].is_op("=") and _same_operand(window[0], window[2]):
            return _blocked("tautology", "Always-true OR predicate looks like an injection")
    return None


def _check_string_concatenation(tokens: list[Token]) -> ValidationResult | None:
    for index, token in enumerate(tokens):
        if token.kind != "op" or token.value not in {"+", "||"}:
            continue
        before = tokens[index - 1] if index > 0 else None
        after = tokens[index + 1] if index + 1 < len(tokens) else None
        if (before is not None and before.kind == "string") or (after is not None and after.kind == "string"):
            return _blocked(
                "string_concatenation",
                "String literal concatenation is not permitted; pass values as parameters",
            )
    return None


def _check_procedure_scope(tokens: list[Token]) -> ValidationResult | None:
    words = [token for token in tokens if token.kind in {"word", "quoted"}]
    header_end = 0
    if words and words[0].is_word("CREATE", "ALTER"):
        if words[0].is_word("CREATE") and len(words) > 2 and words[1].is_word("OR") and words[2].is_word("ALTER"):
            header_end = 3
        else:
            header_end = 1
        if header_end >= len(words) or words[header_end].upper not in _PROCEDURE_WORDS:
            return _blocked("procedure_scope", "Only procedure definitions may be drafted")
        header_end += 1
    for index in range(header_end, len(words)):
        if not words[index].is_word("CREATE", "ALTER"):
            continue
        following = words[index + 1] if index + 1 < len(words) else None
        if following is None or following.upper not in _SCOPED_DDL_OBJECTS:
            continue
        target = words[index + 2] if index + 2 < len(words) else None
        temp_table = following.is_word("TABLE") and target is not None and target.value.startswith("#")
        if not temp_table:
            return _blocked(
                "procedure_scope",
                f"Procedure bodies may not {words[index].upper} {following.upper} objects",
            )
    return None


def _check_adhoc_statement_class(tokens: list[Token]) -> ValidationResult | None:
    first = next((token for token in tokens if token.kind == "word"), None)
    if first is None or first.upper not in _ADHOC_LEADING:
        return _blocked("statement_class", "Only DML and table/view/index DDL may be executed as writes")
    if first.upper in {"CREATE", "ALTER"}:
        position = tokens.index(first)
        following = tokens[position + 1] if position + 1 < len(tokens) else None
        if following is None or following.kind != "word" or following.upper not in _ADHOC_DDL_OBJECTS:
            return _blocked(
                "statement_class",
                "Procedures and other code objects change only through the draft/deploy lifecycle",
            )
    return None
