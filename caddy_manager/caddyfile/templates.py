from __future__ import annotations

PERFORMANCE_MARKER = "# caddy-manager: performance"
SECURITY_MARKER = "# caddy-manager: security"
SECURITY_SNIPPET = "security_headers"


def site_block(domain: str, upstream: str, *, log_path: str, imports: tuple[str, ...] = ()) -> str:
    imported = "".join(f"\timport {name}\n" for name in imports)
    return (
        f"{domain} {{\n"
        f"{imported}"
        f"\treverse_proxy {upstream}\n"
        "\ttls {\n"
        "\t\tprotocols tls1.2 tls1.3\n"
        "\t}\n"
        "\tencode gzip\n"
        "\tlog {\n"
        f"\t\toutput file {log_path} {{\n"
        "\t\t\troll_size 10MB\n"
        "\t\t\troll_keep 10\n"
        "\t\t}\n"
        "\t\tformat json\n"
        "\t}\n"
        "}\n"
    )


def performance_directives() -> str:
    return (
        f"\t{PERFORMANCE_MARKER}\n"
        "\tservers {\n"
        "\t\tprotocols h1 h2 h3\n"
        "\t\tmax_header_size 16KB\n"
        "\t\ttimeouts {\n"
        "\t\t\tread_body 10s\n"
        "\t\t\tread_header 10s\n"
        "\t\t\twrite 30s\n"
        "\t\t\tidle 2m\n"
        "\t\t}\n"
        "\t}\n"
    )


def security_directives() -> str:
    return (
        f"\t{SECURITY_MARKER}\n"
        "\tservers {\n"
        "\t\tstrict_sni_host on\n"
        "\t}\n"
    )


SECURITY_HEADERS = (
    ("Strict-Transport-Security", "max-age=31536000; includeSubDomains; preload"),
    ("X-Content-Type-Options", "nosniff"),
    ("X-Frame-Options", "SAMEORIGIN"),
    ("X-XSS-Protection", "1; mode=block"),
    ("Referrer-Policy", "strict-origin-when-cross-origin"),
    ("Content-Security-Policy", "default-src 'self'"),
)


def security_headers_snippet() -> str:
    lines = [f"({SECURITY_SNIPPET}) {{\n", "\theader /* {\n"]
    for name, value in SECURITY_HEADERS:
        lines.append(f'\t\t{name} "{value}"\n')
    lines.append("\t\t-Server\n")
    lines.append("\t}\n")
    lines.append("}\n")
    return "".join(lines)

