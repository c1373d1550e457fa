# Security Configuration

# SQL statements and markers the guard never lets through (checked after comment stripping)
DANGEROUS_SQL_PATTERNS = [
    (r"\bDROP\b", "DROP statement"),
    (r"\bINSERT\b", "INSERT statement"),
    (r"\bUPDATE\b", "UPDATE statement"),
    (r"\bDELETE\b", "DELETE statement"),
    (r"\bTRUNCATE\b", "TRUNCATE statement"),
    (r"\bALTER\b", "ALTER statement"),
    (r"\bCREATE\b", "CREATE statement"),
    (r"\bGRANT\b", "GRANT statement"),
    (r"\bREVOKE\b", "REVOKE statement"),
    (r"\bEXEC(UTE)?\b", "EXECUTE statement"),
    (r"\binformation_schema\b", "System table access"),
    (r"\bsystem\.", "System table access"),
    (r"\b1\s*=\s*1\b", "Always-true condition"),
    (r"\bUNION\b", "UNION injection"),
]

# Table-free informational queries allowed without a tenant filter
SYSTEM_QUERY_PATTERN = (
    r"^\s*(SELECT\s+(NOW|CURRENT_TIMESTAMP|CURRENT_DATE|VERSION)\s*\(\s*\)"
    r"|SHOW\s+VARIABLES\b)"
)

# PII Redaction Patterns (Regex)
PII_PATTERNS = {
    "email": r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
    "ssn": r"\b\d{3}-\d{2}-\d{4}\b",
    "card": r"\b\d{4}[-.\s]?\d{4}[-.\s]?\d{4}[-.\s]?\d{4}\b",
    "phone": r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b",
}

# System-role impersonation in user content
IMPERSONATION_MARKERS = [
    "system:",
    "role: system",
]

# Content the client refuses to send at all
PROHIBITED_CONTENT_PATTERNS = [
    r"\b(?:DROP|DELETE|INSERT|ALTER|TRUNCATE)\s+(?:TABLE|DATABASE)\b",
    r"\b(?:EXEC|EXECUTE)\s+(?:IMMEDIATE|PROCEDURE)\b",
    r"\bxp_cmdshell\b",
    r"\b(?:UNION|INTERSECT|EXCEPT)\s+(?:ALL\s+)?SELECT\b",
    r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>",
    r"javascript:\s*[^\"'\s]+",
    r"\.\./|\.\.\\",
    r"[;&|`$]\s*(?:cat|ls|rm|wget|curl|nc|bash|sh)\b",
]

# Roles allowed to use the assistant
AI_ALLOWED_ROLES = {"member", "org:member", "admin", "org:admin", "owner", "org:owner"}

# Instruction-override phrases stripped from user input before prompting
PROMPT_INJECTION_PATTERNS = [
    r"\b(?:ignore|forget|disregard)\s+(?:all\s+)?previous\s+instructions\b",
    r"\byou\s+are\s+now\s+a\s+different\s+(?:assistant|ai|model)\b",
    r"\bsystem:\s*ignore\s+previous\b",
    r"<\|[^|>]*\|>",
    r"\[/?INST\]",
    r"<</?SYS>>",
]
