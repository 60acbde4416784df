"""
iptables Firewall Backend
=========================
Installs and removes guest firewall rules with the iptables userspace tool.
Every rule carries a unique `-m comment --comment <tag>` so it can be found
and removed later by tag alone, whatever else was changed around it.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from typing import List, Sequence

from .base import FirewallBackend, FirewallError, FirewallRule, RuleRef

logger = logging.getLogger(__name__)

MANAGED_TABLES = ("nat", "filter")


def _comment_of(tokens: Sequence[str]) -> str:
    for i, tok in enumerate(tokens[:-1]):
        if tok == "--comment":
            return tokens[i + 1]
    return ""


class IptablesFirewall(FirewallBackend):
    """Firewall backend driving `iptables -w`."""

    def __init__(self, binary: str = "iptables"):
        self.binary = binary

    def _run(self, args: List[str]) -> str:
        cmd = [self.binary, "-w", *args]
        try:
            res = subprocess.run(cmd, check=True, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise FirewallError(f"{self.binary} not found") from e
        except subprocess.CalledProcessError as e:
            raise FirewallError(f"{shlex.join(cmd)} failed: {(e.stderr or '').strip()}") from e
        return res.stdout

    def _rules_in(self, table: str, chain: str = "") -> List[List[str]]:
        """Return `-A` specs (tokenized) listed by `iptables -S`."""
        args = ["-t", table, "-S"]
        if chain:
            args.append(chain)
        specs = []
        for line in self._run(args).splitlines():
            tokens = shlex.split(line)
            if len(tokens) > 1 and tokens[0] == "-A":
                specs.append(tokens)
        return specs

    def insert_rule(self, rule: FirewallRule) -> None:
        args = ["-t", rule.table, "-A", rule.chain, *rule.match, "-m", "comment", "--comment", rule.tag, *rule.target]
        self._run(args)
        logger.info("Installed rule %s", rule.ref)

    def rule_exists(self, ref: RuleRef) -> bool:
        return any(_comment_of(spec) == ref.tag for spec in self._rules_in(ref.table, ref.chain))

    def delete_rule(self, ref: RuleRef) -> bool:
        """Delete the listed rule(s) carrying this tag; the rule text comes from the kernel, not from a template."""
        removed = False
        for spec in self._rules_in(ref.table, ref.chain):
            if _comment_of(spec) != ref.tag:
                continue
            self._run(["-t", ref.table, "-D", *spec[1:]])
            removed = True
        if removed:
            logger.info("Removed rule %s", ref)
        else:
            logger.debug("Rule %s already absent", ref)
        return removed

    def list_rules(self, tag_prefix: str) -> List[RuleRef]:
        refs = []
        for table in MANAGED_TABLES:
            for spec in self._rules_in(table):
                tag = _comment_of(spec)
                if tag.startswith(tag_prefix):
                    refs.append(RuleRef(table, spec[1], tag))
        return refs
