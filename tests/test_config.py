"""Tests for cluster definition parsing."""

from pathlib import Path

import pytest

from clrun.config import (
    Defaults,
    Host,
    MalformedDefinition,
    UnknownCluster,
    load_clusters,
    parse_clusters,
    parse_host_line,
    parse_yaml_clusters,
)

CLFILE = """
prod:
\tprod0.example.com ~/.ssh/id_ed25519
\tprod1.example.com ~/.ssh/id_ed25519
\tprod2.example.com ~/.ssh/id_ed25519
uat:
    uat0.example.com \t~/.ssh/id_rsa
    uat1.example.com \t  \t~/.ssh/id_rsa
    uat2.example.com   \t~/.ssh/id_rsa

# Comment line, this is ignored.
mixed:
\tmixed0.example.com
\t    mixed1.example.com:444
  # comment between hosts
  mixed2.example.com
                  \t\t \t \t    mixed3.example.com \t\t \t \t   ~/.ssh/id_ed25519
"""


def test_parse_counts_hosts_per_cluster(defaults: Defaults) -> None:
    """Irregular indentation and comments do not change host counts."""
    clusters = parse_clusters(CLFILE, defaults)

    assert list(clusters) == ["prod", "uat", "mixed"]
    assert len(clusters.hosts("prod")) == 3
    assert len(clusters.hosts("uat")) == 3
    assert len(clusters.hosts("mixed")) == 4


def test_parse_mixed_cluster_fields(defaults: Defaults) -> None:
    hosts = parse_clusters(CLFILE, defaults).hosts("mixed")

    assert [h.address for h in hosts] == [
        "mixed0.example.com:22",
        "mixed1.example.com:444",
        "mixed2.example.com:22",
        "mixed3.example.com:22",
    ]
    assert hosts[0].ssh_key == defaults.ssh_key
    assert hosts[1].ssh_key == defaults.ssh_key
    assert hosts[3].ssh_key == defaults.home / ".ssh" / "id_ed25519"


def test_parse_prod_hosts_default_port(defaults: Defaults) -> None:
    hosts = parse_clusters(CLFILE, defaults).hosts("prod")

    assert all(h.port == 22 for h in hosts)
    assert all(h.address.endswith(":22") for h in hosts)


def test_bare_host_fills_defaults(defaults: Defaults) -> None:
    host = parse_host_line("web.example.com", defaults)

    assert host == Host(
        user="tester",
        hostname="web.example.com",
        port=22,
        ssh_key=defaults.home / ".ssh" / "id_rsa",
    )


def test_host_line_overrides() -> None:
    defaults = Defaults(user="tester", home=Path("/home/tester"))

    host = parse_host_line("alice@host:2222 /tmp/key", defaults)

    assert host.user == "alice"
    assert host.address == "host:2222"
    assert host.ssh_key == Path("/tmp/key")


def test_tilde_expands_to_configured_home() -> None:
    defaults = Defaults(user="tester", home=Path("/srv/home"))

    host = parse_host_line("db ~/.ssh/db_key", defaults)

    assert host.ssh_key == Path("/srv/home/.ssh/db_key")


def test_user_split_on_first_at(defaults: Defaults) -> None:
    host = parse_host_line("ops@jump@internal", defaults)

    assert host.user == "ops"
    assert host.hostname == "jump@internal"


@pytest.mark.parametrize(
    "line, address",
    [
        ("[::1]:2200", "[::1]:2200"),
        ("[fe80::1]", "[fe80::1]:22"),
        ("fe80::1", "[fe80::1]:22"),
    ],
)
def test_ipv6_addresses(defaults: Defaults, line: str, address: str) -> None:
    assert parse_host_line(line, defaults).address == address


@pytest.mark.parametrize(
    "line",
    [
        "host /a/key extra",
        "host:notaport",
        "host:70000",
        "@host",
        ":22",
        "[::1",
        "web:\u00b2",
        "web:\uff11\uff10",
    ],
)
def test_malformed_host_lines(defaults: Defaults, line: str) -> None:
    with pytest.raises(MalformedDefinition):
        parse_host_line(line, defaults)


def test_host_before_header_is_malformed(defaults: Defaults) -> None:
    with pytest.raises(MalformedDefinition, match="line 2"):
        parse_clusters("\norphan.example.com\nprod:\n  web0\n", defaults)


def test_repeated_header_appends(defaults: Defaults) -> None:
    clusters = parse_clusters("a:\n x\nb:\n y\na:\n z\n", defaults)

    assert [h.hostname for h in clusters.hosts("a")] == ["x", "z"]


def test_empty_section_is_known(defaults: Defaults) -> None:
    clusters = parse_clusters("empty:\nfull:\n  host\n", defaults)

    assert clusters.hosts("empty") == ()


def test_unknown_cluster(defaults: Defaults) -> None:
    clusters = parse_clusters(CLFILE, defaults)

    with pytest.raises(UnknownCluster, match="staging"):
        clusters.hosts("staging")


def test_yaml_clusters(defaults: Defaults) -> None:
    clusters = parse_yaml_clusters(
        """
prod:
  - web0.example.com
  - deploy@web1.example.com:2222 ~/.ssh/deploy
  - host: db.example.com
    user: postgres
    port: 2200
    ssh_key: /keys/db
""",
        defaults,
    )

    web0, web1, db = clusters.hosts("prod")
    assert web0.address == "web0.example.com:22"
    assert web1.user == "deploy"
    assert web1.ssh_key == defaults.home / ".ssh" / "deploy"
    assert db == Host(user="postgres", hostname="db.example.com", port=2200, ssh_key=Path("/keys/db"))


@pytest.mark.parametrize(
    "text",
    [
        "- just\n- a list\n",
        "prod: web0\n",
        "prod:\n  - port: 22\n",
        "prod:\n  - host: web\n    port: http\n",
        "prod: [unclosed\n",
        "prod:\n  - host: web\n    user: \"\"\n",
        "prod:\n  - host: web\n    user:\n",
        "prod:\n  - host: web\n    user: 42\n",
        "prod:\n  - host: web\n    port: true\n",
        "prod:\n  - host: web\n    ssh_key:\n",
        "prod:\n  - host: web\n    ssh_key: \"\"\n",
    ],
)
def test_malformed_yaml(defaults: Defaults, text: str) -> None:
    with pytest.raises(MalformedDefinition):
        parse_yaml_clusters(text, defaults)


def test_load_clusters_by_suffix(tmp_path: Path, defaults: Defaults) -> None:
    clfile = tmp_path / "ClFile"
    clfile.write_text("prod:\n  web0\n")
    yaml_file = tmp_path / "clusters.yaml"
    yaml_file.write_text("prod:\n  - web0\n")

    from_clfile = load_clusters(clfile, defaults)
    from_yaml = load_clusters(yaml_file, defaults)

    assert from_clfile.hosts("prod") == from_yaml.hosts("prod")
    assert from_clfile.source_path == clfile.resolve()


def test_load_clusters_missing_file(tmp_path: Path, defaults: Defaults) -> None:
    with pytest.raises(FileNotFoundError):
        load_clusters(tmp_path / "ClFile", defaults)


def test_bare_ipv6_ending_in_colon_is_a_host(defaults: Defaults) -> None:
    clusters = parse_clusters("v6:\n  2001:db8::\n  prod-eu.1:\n  web0\n", defaults)

    assert list(clusters) == ["v6", "prod-eu.1"]
    assert [h.address for h in clusters.hosts("v6")] == ["[2001:db8::]:22"]
    assert [h.hostname for h in clusters.hosts("prod-eu.1")] == ["web0"]


def test_load_clusters_invalid_utf8(tmp_path: Path, defaults: Defaults) -> None:
    clfile = tmp_path / "ClFile"
    clfile.write_bytes(b"prod:\n  web\xff0\n")

    with pytest.raises(MalformedDefinition, match="UTF-8"):
        load_clusters(clfile, defaults)
