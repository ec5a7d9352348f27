"""Attack signature library.

Signatures are grouped into families.  A family fixes the severity, the
finding kind and the technique tag of every signature it contains, so the
severity table lives in exactly one place (:data:`FAMILY_SEVERITY`) instead
of being re-derived at each call site.

Families are evaluated in :data:`FAMILY_ORDER`; within a family, signatures
keep their declaration order.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from types import MappingProxyType

from incident_sentinel.core.types import FindingKind, Severity

# ---------------------------------------------------------------------------
# Families
# ---------------------------------------------------------------------------


class SignatureFamily(enum.StrEnum):
    """Attack families recognised by the scanner."""

    DESTRUCTIVE = "destructive"
    SYSTEM_PROCEDURE = "system_procedure"
    UNION_SELECT = "union_select"
    DATA_MANIPULATION = "data_manipulation"
    TIME_BASED = "time_based"
    SCHEMA_INTROSPECTION = "schema_introspection"
    FILE_ACCESS = "file_access"
    COMMAND_INJECTION = "command_injection"
    SCRIPT_INJECTION = "script_injection"
    TAUTOLOGY = "tautology"
    ENCODING = "encoding"
    NOSQL = "nosql"
    COMMENT_TERMINATION = "comment_termination"


FAMILY_ORDER: tuple[SignatureFamily, ...] = tuple(SignatureFamily)

FAMILY_SEVERITY: MappingProxyType[SignatureFamily, Severity] = MappingProxyType({
    SignatureFamily.DESTRUCTIVE: Severity.CRITICAL,
    SignatureFamily.SYSTEM_PROCEDURE: Severity.CRITICAL,
    SignatureFamily.UNION_SELECT: Severity.HIGH,
    SignatureFamily.DATA_MANIPULATION: Severity.HIGH,
    SignatureFamily.TIME_BASED: Severity.HIGH,
    SignatureFamily.SCHEMA_INTROSPECTION: Severity.HIGH,
    SignatureFamily.FILE_ACCESS: Severity.HIGH,
    SignatureFamily.COMMAND_INJECTION: Severity.HIGH,
    SignatureFamily.SCRIPT_INJECTION: Severity.HIGH,
    SignatureFamily.TAUTOLOGY: Severity.MEDIUM,
    SignatureFamily.ENCODING: Severity.MEDIUM,
    SignatureFamily.NOSQL: Severity.MEDIUM,
    SignatureFamily.COMMENT_TERMINATION: Severity.LOW,
})

FAMILY_KIND: MappingProxyType[SignatureFamily, FindingKind] = MappingProxyType({
    SignatureFamily.DESTRUCTIVE: FindingKind.SQL_INJECTION,
    SignatureFamily.SYSTEM_PROCEDURE: FindingKind.SQL_INJECTION,
    SignatureFamily.UNION_SELECT: FindingKind.SQL_INJECTION,
    SignatureFamily.DATA_MANIPULATION: FindingKind.SQL_INJECTION,
    SignatureFamily.TIME_BASED: FindingKind.SQL_INJECTION,
    SignatureFamily.SCHEMA_INTROSPECTION: FindingKind.SQL_INJECTION,
    SignatureFamily.FILE_ACCESS: FindingKind.SQL_INJECTION,
    SignatureFamily.COMMAND_INJECTION: FindingKind.COMMAND_INJECTION,
    SignatureFamily.SCRIPT_INJECTION: FindingKind.SCRIPT_INJECTION,
    SignatureFamily.TAUTOLOGY: FindingKind.SQL_INJECTION,
    SignatureFamily.ENCODING: FindingKind.OBFUSCATION,
    SignatureFamily.NOSQL: FindingKind.NOSQL_INJECTION,
    SignatureFamily.COMMENT_TERMINATION: FindingKind.SQL_INJECTION,
})

# Technique tags used to classify honeypot interactions.
FAMILY_TECHNIQUE: MappingProxyType[SignatureFamily, str] = MappingProxyType({
    SignatureFamily.DESTRUCTIVE: "destructive",
    SignatureFamily.SYSTEM_PROCEDURE: "system_procedure_probe",
    SignatureFamily.UNION_SELECT: "union_based",
    SignatureFamily.DATA_MANIPULATION: "data_manipulation",
    SignatureFamily.TIME_BASED: "time_based_blind",
    SignatureFamily.SCHEMA_INTROSPECTION: "schema_enumeration",
    SignatureFamily.FILE_ACCESS: "file_access",
    SignatureFamily.COMMAND_INJECTION: "command_injection",
    SignatureFamily.SCRIPT_INJECTION: "script_injection",
    SignatureFamily.TAUTOLOGY: "tautology_based",
    SignatureFamily.ENCODING: "obfuscation",
    SignatureFamily.NOSQL: "nosql_injection",
    SignatureFamily.COMMENT_TERMINATION: "comment_termination",
})

DEFAULT_TECHNIQUE = "reconnaissance"


# ---------------------------------------------------------------------------
# Signature data structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Signature:
    """A single attack signature.

    Attributes
    ----------
    signature_id:
        Unique identifier (``SIG-XXX`` for the standard library).
    family:
        The attack family; determines severity and finding kind.
    pattern:
        Case-insensitive regular expression.
    description:
        Human-readable description of what the signature detects.
    """

    signature_id: str
    family: SignatureFamily
    pattern: str
    description: str

    @property
    def severity(self) -> Severity:
        return FAMILY_SEVERITY[self.family]

    @property
    def kind(self) -> FindingKind:
        return FAMILY_KIND[self.family]


# ---------------------------------------------------------------------------
# Standard signature library
# ---------------------------------------------------------------------------


def build_standard_signatures() -> list[Signature]:
    """Build the standard signature library, in family order."""
    sigs: list[Signature] = []
    f = SignatureFamily

    # -- Destructive statements ---------------------------------------------
    sigs.extend([
        Signature("SIG-001", f.DESTRUCTIVE, r"\bdrop\s+(?:table|database|schema)\b",
                  "DROP of a table, database or schema"),
        Signature("SIG-002", f.DESTRUCTIVE, r"\btruncate\s+table\b",
                  "TRUNCATE TABLE"),
        Signature("SIG-003", f.DESTRUCTIVE, r"\bdelete\s+from\s+\w+",
                  "Unrestricted DELETE FROM"),
        Signature("SIG-004", f.DESTRUCTIVE, r"\bshutdown\s+with\s+nowait\b|;\s*shutdown\b",
                  "Database server shutdown"),
    ])

    # -- System procedures ---------------------------------------------------
    sigs.extend([
        Signature("SIG-010", f.SYSTEM_PROCEDURE, r"\bxp_\w+",
                  "Extended stored procedure (xp_cmdshell and friends)"),
        Signature("SIG-011", f.SYSTEM_PROCEDURE, r"\bsp_(?:executesql|oacreate|configure|addlogin|password)\b",
                  "Privileged system stored procedure"),
        Signature("SIG-012", f.SYSTEM_PROCEDURE, r"\bmsys\w+",
                  "Access system table probe"),
        Signature("SIG-013", f.SYSTEM_PROCEDURE, r"\bexec(?:ute)?\s*\(\s*@",
                  "Dynamic EXEC of a variable"),
        Signature("SIG-014", f.SYSTEM_PROCEDURE, r"\breconfigure\b",
                  "Server RECONFIGURE"),
    ])

    # -- UNION / SELECT ------------------------------------------------------
    sigs.extend([
        Signature("SIG-020", f.UNION_SELECT, r"\bunion\b(?:\s+(?:all|distinct))?\s+select\b",
                  "UNION-based result set injection"),
        Signature("SIG-021", f.UNION_SELECT, r"\b(?:if|exists)\s*\(\s*select\b",
                  "Conditional subquery probe"),
    ])

    # -- Data manipulation ---------------------------------------------------
    sigs.extend([
        Signature("SIG-030", f.DATA_MANIPULATION, r"\binsert\s+into\s+\w+",
                  "INSERT INTO statement"),
        Signature("SIG-031", f.DATA_MANIPULATION, r"\bupdate\s+\w+\s+set\s+\w+\s*=",
                  "UPDATE ... SET statement"),
        Signature("SIG-032", f.DATA_MANIPULATION, r"\balter\s+table\b",
                  "ALTER TABLE statement"),
        Signature("SIG-033", f.DATA_MANIPULATION, r"\bcreate\s+table\b",
                  "CREATE TABLE statement"),
    ])

    # -- Time-based blind ----------------------------------------------------
    sigs.extend([
        Signature("SIG-040", f.TIME_BASED, r"\bwaitfor\s+delay\b",
                  "WAITFOR DELAY (MSSQL)"),
        Signature("SIG-041", f.TIME_BASED, r"\b(?:pg_)?sleep\s*\(\s*\d+",
                  "SLEEP()/pg_sleep() delay"),
        Signature("SIG-042", f.TIME_BASED, r"\bbenchmark\s*\(\s*\d+",
                  "BENCHMARK() CPU delay"),
    ])

    # -- Schema introspection ------------------------------------------------
    sigs.extend([
        Signature("SIG-050", f.SCHEMA_INTROSPECTION, r"\binformation_schema\b",
                  "INFORMATION_SCHEMA enumeration"),
        Signature("SIG-051", f.SCHEMA_INTROSPECTION, r"\bsys(?:objects|columns)\b",
                  "MSSQL catalog enumeration"),
        Signature("SIG-052", f.SCHEMA_INTROSPECTION, r"\bsqlite_master\b",
                  "SQLite catalog enumeration"),
    ])

    # -- File-system access --------------------------------------------------
    sigs.extend([
        Signature("SIG-060", f.FILE_ACCESS, r"\bload_file\s*\(",
                  "LOAD_FILE() read"),
        Signature("SIG-061", f.FILE_ACCESS, r"\binto\s+(?:out|dump)file\b",
                  "INTO OUTFILE/DUMPFILE write"),
    ])

    # -- Command injection ---------------------------------------------------
    sigs.extend([
        Signature(
            "SIG-070", f.COMMAND_INJECTION,
            r"(?:;|&&|\|\|?)\s*(?:cat|ls|id|whoami|uname|wget|curl|nc|bash|sh|rm|ping|chmod)\b",
            "Shell command chained with a metacharacter",
        ),
        Signature("SIG-071", f.COMMAND_INJECTION, r"\$\([^)]*\)",
                  "Shell command substitution"),
        Signature("SIG-072", f.COMMAND_INJECTION, r"`[^`]+`",
                  "Backtick command substitution"),
    ])

    # -- Script injection ----------------------------------------------------
    sigs.extend([
        Signature("SIG-080", f.SCRIPT_INJECTION, r"<script\b[^>]*>",
                  "Inline <script> tag"),
        Signature("SIG-081", f.SCRIPT_INJECTION, r"\bjavascript\s*:",
                  "javascript: URL"),
        Signature("SIG-082", f.SCRIPT_INJECTION, r"\bon(?:load|error|click|mouseover|focus)\s*=",
                  "Inline DOM event handler"),
    ])

    # -- Tautologies ---------------------------------------------------------
    sigs.extend([
        Signature("SIG-090", f.TAUTOLOGY, r"\b(?:or|and)\s+['\"]?\d+['\"]?\s*=\s*['\"]?\d+",
                  "Numeric boolean tautology (OR 1=1)"),
        Signature("SIG-091", f.TAUTOLOGY, r"'\s*or\s+'[^']*'\s*=\s*'",
                  "Quoted string tautology ('a'='a')"),
        Signature("SIG-092", f.TAUTOLOGY, r"'\s*or\s+true\b",
                  "OR TRUE after a closing quote"),
    ])

    # -- Encoding / obfuscation ----------------------------------------------
    sigs.extend([
        Signature("SIG-100", f.ENCODING, r"\bchar\s*\(\s*\d+\s*(?:,\s*\d+\s*)*\)",
                  "CHAR() character construction"),
        Signature("SIG-101", f.ENCODING, r"\b0x[0-9a-f]{6,}\b",
                  "Long hex literal"),
        Signature("SIG-102", f.ENCODING, r"\bfrom_base64\s*\(",
                  "FROM_BASE64() decoding"),
    ])

    # -- NoSQL operators -----------------------------------------------------
    sigs.append(
        Signature("SIG-110", f.NOSQL, r"\$(?:where|ne|gt|gte|lt|lte|in|nin|regex|exists)\b",
                  "MongoDB query operator in user input"),
    )

    # -- Comments and termination --------------------------------------------
    sigs.extend([
        Signature("SIG-120", f.COMMENT_TERMINATION, r"'\s*;\s*(?:drop|delete|update|insert)\b",
                  "Quote-terminated stacked statement"),
        Signature("SIG-121", f.COMMENT_TERMINATION, r";\s*--",
                  "Statement terminator followed by comment"),
        Signature("SIG-122", f.COMMENT_TERMINATION, r"'\s*(?:--|#)",
                  "Quote followed by comment"),
        Signature("SIG-123", f.COMMENT_TERMINATION, r"/\*.*?\*/",
                  "Inline block comment"),
    ])

    return sigs
