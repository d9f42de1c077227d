"""
Threat signature table.

Pure data: category name -> regex sources. Each signature pairs a suspicious
keyword or operator with a delimiter or context marker so ordinary prose does
not trip it. Case-insensitive signatures carry an inline ``(?i)`` flag.

Bump ``PATTERN_TABLE_VERSION`` whenever a signature is added, removed or
changed; the version is logged with every detection.
"""

PATTERN_TABLE_VERSION = "2024.2"

_SQL_VERBS = r"SELECT|INSERT|UPDATE|DELETE|DROP|UNION|ALTER|CREATE"
_UNIX_CMDS = (
    r"cat|ls|pwd|whoami|id|uname|wget|curl|nc|netcat|rm|cp|mv|chmod|chown|su|sudo|"
    r"passwd|ps|kill|mount|umount|ifconfig|netstat|iptables"
)
_WIN_CMDS = (
    r"dir|type|copy|del|net|tasklist|systeminfo|ipconfig|ping|telnet|ftp|powershell|"
    r"cmd|wmic|reg|sc|schtasks"
)
_EVENTS = r"load|click|mouse|key|focus|blur|change|submit|error|resize"
_EXECUTABLES = r"exe|bat|cmd|com|scr|vbs|js|jar"

DEFAULT_PATTERNS = {
    "sql_injection": [
        # keyword + clause + terminator
        r"(?i)(\b(SELECT|INSERT|UPDATE|DELETE|DROP|UNION|ALTER|CREATE)\b.*\b(FROM|TABLE|DATABASE|INTO|VALUES|WHERE)\b.*['\";\-#])",
        # comments followed by SQL
        rf"(?i)--\s*\b({_SQL_VERBS})\b",
        rf"(?i)/\*[\s\S]*\b({_SQL_VERBS})\b[\s\S]*\*/",
        rf"(?i)#\s*\b({_SQL_VERBS})\b",
        # tautologies with a trailing statement or comment
        r"(?i)(\b(OR|AND)\b\s*['\"]\s*[^'\"]*['\"]\s*=\s*['\"]\s*[^'\"]*['\"].*(\b(SELECT|DROP|DELETE|INSERT|UPDATE)\b|--|#|/\*))",
        r"(?i)(1\s*=\s*1|'1'='1'|\"1\"=\"1\").*(\b(SELECT|DROP|DELETE|INSERT|UPDATE)\b|--|#|/\*)",
        r"(?i)(\bUNION\b.*\bSELECT\b)",
        r"(?i)(\b(CONCAT|CHAR|ASCII|SUBSTRING|LENGTH|CAST|CONVERT|EXEC|EXECUTE|WAITFOR|DELAY)\s*\().*(\b(FROM|WHERE|SELECT|INSERT|UPDATE|DELETE)\b|['\";\-#])",
        r"(?i)(\bINFORMATION_SCHEMA\b|\bSYSOBJECTS\b|\bSYSTABLES\b|\bMSYSACCESSSTORAGE\b)",
        r"(?i)(0x[0-9A-Fa-f]+).*(\b(SELECT|INSERT|UPDATE|DELETE|DROP|FROM|WHERE)\b)",
        # still-encoded quotes (double-encoded payloads)
        r"(?i)%27.*(\b(SELECT|INSERT|UPDATE|DELETE|DROP|UNION|OR|AND)\b)",
        r"(?i)%22.*(\b(SELECT|INSERT|UPDATE|DELETE|DROP|UNION|OR|AND)\b)",
        # stacked queries
        r"(?i);\s*\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|EXECUTE)\b",
    ],
    "xss": [
        r"(?i)<script[\s\S]*?>[\s\S]*?</script>",
        r"(?i)<script[\s\S]*?>",
        rf"(?i)\bon({_EVENTS})\s*=\s*['\"]\s*[^'\"]*javascript",
        rf"(?i)\bon({_EVENTS})\s*=\s*['\"]\s*[^'\"]*alert\s*\(",
        rf"(?i)\bon({_EVENTS})\s*=\s*['\"]\s*[^'\"]*eval\s*\(",
        r"(?i)javascript\s*:\s*(alert|eval|confirm|prompt|document\.|window\.|location\.|top\.)",
        r"(?i)data\s*:\s*text/html[\s\S]*<script",
        r"(?i)data\s*:\s*text/html[\s\S]*javascript",
        r"(?i)(<[^>]*>.*)?(\b(eval|alert|confirm|prompt|document\.write|innerHTML|outerHTML)\s*\()",
        r"(?i)<svg[\s\S]*?<script",
        r"(?i)<svg[\s\S]*?on\w+\s*=.*?javascript",
        r"(?i)<meta[\s\S]*?http-equiv\s*=\s*['\"]\s*refresh[\s\S]*?javascript",
        r"(?i)style\s*=.*expression\s*\(.*javascript",
        # base64 of "<script", "<img src", "<iframe"
        r"(?i)data:\s*[\w/]+;base64.*?(PHNjcmlwdA|PGltZyBzcmM|PGlmcmFtZQ)",
        r"(?i)&#x?[0-9a-f]+;.*?<script",
    ],
    "path_traversal": [
        r"\.{2,}[/\\]{2,}",
        r"(\.\.[/\\]){3,}",
        rf"(?i)[A-Za-z]:[/\\].*\.({_EXECUTABLES})",
        r"(?i)^[/\\]+(etc|proc|sys|var|usr|bin|sbin|home|root)[/\\]+.*\.(conf|cfg|ini|log|passwd|shadow|hosts)",
        rf"(?i)%00.*\.({_EXECUTABLES}|php|asp|jsp)",
        r"(?i)(%2e%2e[/\\]|%2f|%5c){2,}",
        rf"(?i)^\\\\[^\\]+\\.*\.({_EXECUTABLES})",
        r"(?i)~[/\\].*\.(ssh|bash|profile|bashrc|history)",
        r"(?i)\.(htaccess|htpasswd|web\.config|application\.properties|database\.yml)$",
    ],
    "command_injection": [
        rf"(?i)[;&|]\s*\b({_UNIX_CMDS})\b",
        rf"(?i)`\s*\b({_UNIX_CMDS})\b[^`]*`",
        rf"(?i)\$\(\s*\b({_UNIX_CMDS})\b[^)]*\)",
        rf"(?i)[;&|]\s*\b({_WIN_CMDS})\b",
        r"(?i)\|\s*\b(sh|bash|cmd|powershell|perl|python|ruby|php|node|nc|netcat|telnet|ftp)\b",
        r"(?i)[><]\s*(/etc/|/proc/|/sys/|/var/|/tmp/|/dev/|C:\\Windows\\|C:\\System32\\)",
        # environment variables chained into another command (upper-case only)
        r"\$[A-Z_]+\s*[;&|]",
        r"%[A-Z_]+%\s*[;&|]",
        rf"(?i)[\r\n]+\s*\b({_UNIX_CMDS}|dir|type|copy|del|net|tasklist|systeminfo|ipconfig|ping|telnet|ftp|powershell|cmd)\b",
    ],
    "ldap_injection": [
        r"(\*\)|\)\*).*(\||&|!)\s*\(",
        r"(\|\(|&\(|!\().*[=<>~]\s*\*",
        r"(?i)(objectClass=\*).*(\||&|!)",
        r"(\)(\||&|!)\().*[=<>~]",
        r"(?i)(\|\(|&\()(uid|cn|ou|dc)\s*=\s*\*",
        r"\x00.*(\(|\)|=|\||&)",
        r"\(\|\(\w+=[^)]*\)\(\w+=[^)]*\)\)",
        r"\(\w+\s*=\s*\*\)\s*(\||&)\s*\(",
        r"(?i)(dc|ou|cn)\s*=.*(\)(\||&)|\x00)",
    ],
    "nosql_injection": [
        r"(?i)\$where\s*:\s*[\"'].*[\w\s]*\(",
        r"(?i)\$regex\s*:\s*[\"'].*(\$|\.|\(|\)|;)",
        r"(?i)\$ne\s*:\s*null",
        r"(?i)\$gt\s*:\s*([\"']\s*[\"']|0)",
        r"(?i)\$lt\s*:\s*([\"']\s*[\"']|999999)",
        r"(?i)\$or\s*:\s*\[.*\$ne",
        r"(?i)\$and\s*:\s*\[.*\$ne",
        r"(?i)\$in\s*:\s*\[.*\$ne",
        r"(?i)\$exists\s*:\s*false",
        # server-side JavaScript
        r"(?i)this\.\w+\s*==\s*[\"'].*[\"']\s*\|\|",
        r"(?i)return\s+true",
        r"(?i)sleep\s*\(\s*\d+\s*\)",
    ],
}

# Length ceilings keyed by field name (lower-case)
INPUT_LIMITS = {
    "default": 500,
    "email": 100,
    "password": 20,
    "username": 50,
    "search": 500,
    "searchtext": 500,
    "url": 500,
    "phone": 20,
}

# Field names containing any of these skip the length ceiling
INPUT_LIMIT_EXEMPTIONS = ("title", "introtext", "fulltext", "name", "description")

# Field names (exact, lower-case) never scanned against the signatures
RICH_TEXT_FIELDS = ("fulltext",)
