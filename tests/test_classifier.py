from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sshsentry.address import parse_address
from sshsentry.classifier import LogClassifier, parse_log_line
from sshsentry.errors import LogUnavailable

TARGET = parse_address("203.0.113.5")
OTHER = parse_address("198.51.100.7")

SSH_LOG = """\
Jan  5 10:00:01 gw sshd[100]: Accepted publickey for alice from 203.0.113.5 port 50000 ssh2: RSA SHA256:abc
Jan  5 10:00:02 gw sshd[101]: Invalid user admin from 203.0.113.5 port 4242
Jan  5 10:00:03 gw sshd[101]: Failed password for invalid user admin from 203.0.113.5 port 4242 ssh2
Jan  5 10:00:04 gw sshd[102]: Failed password for root from 203.0.113.5 port 4243 ssh2
Jan  5 10:00:05 gw sshd[103]: Did not receive identification string from 203.0.113.5 port 4244
Jan  5 10:00:06 gw sshd[102]: Connection closed by authenticating user root 203.0.113.5 port 4243 [preauth]
Jan  5 10:00:07 gw sshd[104]: Failed password for root from 198.51.100.7 port 4000 ssh2
Jan  5 10:00:08 gw cron[105]: Accepted publickey for alice from 203.0.113.5 port 1 ssh2
"""


def test_parse_log_line_extracts_fixed_fields():
    line = parse_log_line("2024-12-20T07:10:05.913746+01:00 gw sshd-session[4026]: Connection closed by 1.2.3.4 port 22")
    assert line is not None
    assert line.host == "gw"
    assert line.process == "sshd-session"
    assert line.pid == "4026"
    assert line.message == "Connection closed by 1.2.3.4 port 22"
    assert parse_log_line("not a syslog line") is None


def test_ssh_rules_classify_each_line_once():
    classifier = LogClassifier({"ssh": None})
    result = classifier.classify_lines("ssh", TARGET, SSH_LOG.splitlines(True))

    assert result.success == 1
    assert result.naughty == 1
    assert result.failed == 2
    assert result.probed == 1
    assert result.info == 1
    assert result.total == 6


def test_classify_reads_configured_file(tmp_path):
    log = tmp_path / "auth.log"
    log.write_text(SSH_LOG)
    classifier = LogClassifier({"ssh": log})

    result = classifier.classify("ssh", OTHER)
    assert result.failed == 1
    assert result.total == 1
    assert result.available


def test_missing_log_raises_log_unavailable(tmp_path):
    classifier = LogClassifier({"ssh": tmp_path / "missing.log", "ftp": None})
    with pytest.raises(LogUnavailable):
        classifier.classify("ssh", TARGET)
    with pytest.raises(LogUnavailable):
        classifier.classify("ftp", TARGET)


def test_address_must_appear_as_whole_token():
    lines = [
        "Jan  5 10:00:00 gw sshd[1]: Failed password for root from 11.2.3.4 port 22 ssh2\n",
        "Jan  5 10:00:00 gw sshd[1]: Failed password for root from 1.2.3.45 port 22 ssh2\n",
    ]
    result = LogClassifier({}).classify_lines("ssh", parse_address("1.2.3.4"), lines)
    assert result.total == 0


def test_forged_username_cannot_blame_another_address():
    lines = [
        "Jan  5 10:00:00 gw sshd[1]: Failed password for invalid user x from 203.0.113.5 port 22 "
        "from 198.51.100.7 port 4000 ssh2\n",
        "Jan  5 10:00:01 gw sshd[2]: Invalid user Accepted from 203.0.113.5 port 1 from 198.51.100.7 port 4001\n",
    ]
    classifier = LogClassifier({})

    forged = classifier.classify_lines("ssh", TARGET, lines)
    assert forged.total == 0

    actual = classifier.classify_lines("ssh", OTHER, lines)
    assert actual.failed == 1
    assert actual.naughty == 1


def test_disconnect_text_cannot_blame_another_address():
    lines = [
        "Jan  5 10:00:00 gw sshd[1]: Received disconnect from 198.51.100.7 port 4000:11: "
        "Bye 203.0.113.5 port 22 [preauth]\n",
    ]
    result = LogClassifier({}).classify_lines("ssh", TARGET, lines)
    assert result.total == 0


def test_free_text_mentions_do_not_count_as_unknown():
    lines = [
        "Jan  5 10:00:00 gw sshd[1]: User 203.0.113.5 not allowed because listed in DenyUsers\n",
        "Jan  5 10:00:01 gw sshd[2]: Postponed keyboard-interactive for root from 203.0.113.5 port 22 ssh2\n",
    ]
    result = LogClassifier({}).classify_lines("ssh", TARGET, lines)
    assert result.unknown == 1
    assert result.naughty == 0
    assert result.total == 1


FTP_LOG = """\
Jan  5 10:00:00 gw ftpd[300]: connection from client.example.net (203.0.113.5)
Jan  5 10:00:02 gw ftpd[300]: FTP LOGIN FAILED FROM client.example.net, root
Jan  5 10:00:03 gw ftpd[300]: FTP LOGIN REFUSED FROM client.example.net, root
Jan  5 10:00:10 gw ftpd[301]: connection from other.example.org (198.51.100.7)
Jan  5 10:00:11 gw ftpd[301]: FTP LOGIN FROM other.example.org as bob
Jan  5 10:00:12 gw ftpd[300]: FTP LOGIN FROM spoofed.example.com as eve
"""


def test_ftp_sessions_tie_outcomes_to_connect_lines():
    classifier = LogClassifier({})

    target = classifier.classify_lines("ftp", TARGET, FTP_LOG.splitlines(True))
    assert target.failed == 1
    assert target.naughty == 1
    assert target.success == 0

    other = classifier.classify_lines("ftp", OTHER, FTP_LOG.splitlines(True))
    assert other.success == 1
    assert other.total == 1


MAIL_LOG = """\
Jan  5 10:00:00 gw dovecot[400]: imap-login: Login: user=<alice>, method=PLAIN, rip=203.0.113.5, lip=192.0.2.1, mpid=123, TLS
Jan  5 10:00:01 gw dovecot[401]: imap-login: Disconnected (auth failed, 3 attempts in 12 secs): user=<bob>, method=PLAIN, rip=203.0.113.5, lip=192.0.2.1, TLS
Jan  5 10:00:02 gw postfix/smtpd[500]: warning: unknown[203.0.113.5]: SASL LOGIN authentication failed: UGFzc3dvcmQ6
Jan  5 10:00:03 gw postfix/smtpd[500]: connect from unknown[203.0.113.5]
Jan  5 10:00:04 gw vpopmail[600]: vchkpw-pop3: password fail (pass: 'x') carol@example.net:203.0.113.5
"""


def test_mail_rules_respect_enabled_scopes():
    lines = MAIL_LOG.splitlines(True)

    both = LogClassifier({}).classify_lines("mail", TARGET, lines)
    assert both.success == 1
    assert both.naughty == 2
    assert both.failed == 1
    assert both.info == 1

    mua_only = LogClassifier({}, mail_scopes=("mua",)).classify_lines("mail", TARGET, lines)
    assert mua_only.success == 1
    assert mua_only.naughty == 1
    assert mua_only.failed == 1
    assert mua_only.info == 0
    assert mua_only.total == 3


def test_ipv6_addresses_are_matched():
    target = parse_address("2001:db8::5")
    lines = [
        "Jan  5 10:00:00 gw sshd[1]: Invalid user test from 2001:db8::5 port 22\n",
        "Jan  5 10:00:00 gw sshd[1]: Invalid user test from 2001:db8::55 port 22\n",
    ]
    result = LogClassifier({}).classify_lines("ssh", target, lines)
    assert result.naughty == 1
    assert result.total == 1
