"""
Bash/Shell command analyzer.

Splits a raw command line into sub-commands, extracts the file operations
each one performs, and flags hazardous or statically ambiguous commands.
Covers POSIX shells, Windows cmd and the common PowerShell cmdlets.
"""

import logging
import os
import re
from typing import Any, Dict, List, Optional, Set, Tuple

from .base import BaseExtractor, BashAnalysisResult, FileOperation, OperationKind

logger = logging.getLogger(__name__)

# (text, is_operator)
Token = Tuple[str, bool]

# Placeholder target for operands xargs reads from stdin
XARGS_OPERAND = "$(xargs stdin)"


class BashCommandAnalyzer(BaseExtractor):
    """Analyzer for bash/shell commands."""

    READ_COMMANDS = {
        # Unix
        "cat",
        "head",
        "tail",
        "less",
        "more",
        "grep",
        "egrep",
        "fgrep",
        "rg",
        "ag",
        "ack",
        "strings",
        "xxd",
        "hexdump",
        "od",
        "file",
        "wc",
        "source",
        ".",
        "lsattr",
        # Windows cmd
        "type",
        "findstr",
        # PowerShell
        "get-content",
        "gc",
        "select-string",
        "import-csv",
        "import-clixml",
        "get-acl",
    }

    WRITE_COMMANDS = {
        # Unix
        "tee",
        "install",
        "touch",
        "truncate",
        "mkfifo",
        "mknod",
        "patch",
        "split",
        "csplit",
        # PowerShell
        "set-content",
        "sc",
        "out-file",
        "add-content",
        "ac",
        "new-item",
        "ni",
        "export-csv",
        "export-clixml",
        "clear-content",
    }

    DELETE_COMMANDS = {
        "rm",
        "rmdir",
        "unlink",
        "shred",
        "del",
        "erase",
        "rd",
        "remove-item",
        "ri",
    }

    PERMISSION_COMMANDS = {
        "chmod",
        "chown",
        "chgrp",
        "setfacl",
        "chattr",
        "icacls",
        "cacls",
        "takeown",
        "attrib",
        "set-acl",
    }

    # Last operand is written, the rest are read
    COPY_COMMANDS = {
        "cp",
        "ln",
        "rsync",
        "scp",
        "copy",
        "xcopy",
        "robocopy",
        "copy-item",
        "ci",
        "cpi",
    }

    # Every operand is written (source vanishes, destination appears)
    MOVE_COMMANDS = {"mv", "move", "ren", "rename", "move-item", "mi"}

    # Operands are text, not paths
    TEXT_COMMANDS = {
        "echo",
        "printf",
        "true",
        "false",
        ":",
        "cd",
        "pwd",
        "export",
        "unset",
        "exit",
        "write-output",
        "write-host",
    }

    # Prefixes that run the next word as the real command
    WRAPPER_COMMANDS = {
        "sudo",
        "doas",
        "env",
        "nohup",
        "time",
        "command",
        "exec",
        "builtin",
        "nice",
        "ionice",
        "timeout",
        "stdbuf",
        "xargs",
    }

    # Wrapper options whose following token is a value, not the command
    WRAPPER_VALUE_FLAGS = {
        "sudo": {"-u", "-g", "-C", "-h", "-p", "-U", "-r", "-t", "-D", "-R", "-T",
                 "--user", "--group", "--close-from", "--host", "--prompt",
                 "--other-user", "--role", "--type", "--chdir", "--chroot"},
        "doas": {"-u", "-C"},
        "env": {"-u", "-C", "-S", "--unset", "--chdir", "--split-string"},
        "nice": {"-n", "--adjustment"},
        "ionice": {"-c", "-n", "-p", "-P", "-u", "--class", "--classdata"},
        "timeout": {"-s", "-k", "--signal", "--kill-after"},
        "stdbuf": {"-i", "-o", "-e"},
        "xargs": {"-I", "-L", "-n", "-P", "-d", "-E", "-s", "-a", "--replace",
                  "--max-lines", "--max-args", "--max-procs", "--delimiter",
                  "--eof", "--max-chars", "--arg-file"},
    }

    # Wrappers that take positional arguments before the command
    WRAPPER_POSITIONALS = {"timeout": 1}

    # First operand is a mode/owner/pattern, not a path
    LEADING_NON_PATH = {"chmod", "chown", "chgrp", "chattr", "grep", "egrep", "fgrep",
                        "rg", "ag", "ack", "findstr", "select-string"}

    # Flags whose following token is a value, not an operand
    VALUE_FLAGS = {
        "head": {"-n", "-c"},
        "tail": {"-n", "-c"},
        "grep": {"-A", "-B", "-C", "-m", "-e", "-f", "--include", "--exclude"},
        "rg": {"-A", "-B", "-C", "-m", "-e", "-f", "-g", "-t", "--glob", "--type"},
        "sed": {"-e", "-f"},
        "setfacl": {"-m", "-x"},
        "truncate": {"-s"},
        "install": {"-m", "-o", "-g"},
        "split": {"-l", "-b", "-n"},
    }

    # PowerShell parameters whose value is a path
    PS_PATH_PARAMS = {"-path", "-literalpath", "-filepath", "-destination", "-target"}

    # PowerShell parameters whose value is not a path
    PS_VALUE_PARAMS = {
        "-value",
        "-encoding",
        "-pattern",
        "-filter",
        "-include",
        "-exclude",
        "-itemtype",
        "-name",
        "-delimiter",
        "-aclobject",
        "-totalcount",
        "-tail",
        "-first",
    }

    DANGEROUS_PATTERNS = [
        (
            re.compile(
                r"rm\s+(-[a-zA-Z]*[rfRF][a-zA-Z]*\s+)+(/|~|/\*)(\s+--[a-z-]+)*\s*($|;|&&|\|\||&|\|)"
            ),
            "Recursive delete of root or home directory",
        ),
        (
            re.compile(r"rm\s+(-[a-zA-Z]*[rfRF][a-zA-Z]*\s+)+\*\s*($|;|&&|\|\||&|\|)"),
            "Recursive delete with dangerous glob pattern",
        ),
        (
            re.compile(r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"),
            "Fork bomb detected",
        ),
        (re.compile(r"\.\s*/\s*\.:"), "Fork bomb variant detected"),
        (re.compile(r">\s*/dev/sd[a-z]"), "Direct disk write attempt"),
        (
            re.compile(r"dd\s+.*of\s*=\s*/dev/sd[a-z]", re.IGNORECASE),
            "Direct disk write via dd",
        ),
        (
            re.compile(r"curl\s+[^|]*\|\s*(ba|z|da)?sh\b", re.IGNORECASE),
            "Download and execute pattern (curl | sh)",
        ),
        (
            re.compile(r"wget\s+[^|]*\|\s*(ba|z|da)?sh\b", re.IGNORECASE),
            "Download and execute pattern (wget | sh)",
        ),
        (
            re.compile(r"(curl|wget)\s+[^|]*\|\s*(python[0-9.]*|perl|ruby|node)\b", re.IGNORECASE),
            "Download and execute pattern (pipe to interpreter)",
        ),
        (
            re.compile(r"Invoke-WebRequest[^|]*\|\s*Invoke-Expression", re.IGNORECASE),
            "Download and execute pattern (PowerShell IWR | IEX)",
        ),
        (
            re.compile(r"iwr\s+[^|]*\|\s*iex", re.IGNORECASE),
            "Download and execute pattern (PowerShell iwr | iex)",
        ),
        (
            re.compile(
                r"DownloadString\s*\([^)]+\)[^|]*\|\s*(iex|Invoke-Expression)",
                re.IGNORECASE,
            ),
            "Download and execute pattern (DownloadString | IEX)",
        ),
        (re.compile(r"eval\s+\$"), "Eval of variable content"),
        (re.compile(r"history\s+-c"), "History clearing detected"),
        (
            re.compile(r">\s*~/\.bash_history|>\s*~/\.zsh_history"),
            "History file truncation",
        ),
        (
            re.compile(r"Remove-Item.*ConsoleHost_history\.txt", re.IGNORECASE),
            "PowerShell history deletion",
        ),
        (re.compile(r"setenforce\s+0"), "SELinux disable attempt"),
        (re.compile(r"iptables\s+-F"), "Firewall flush attempt"),
        (
            re.compile(r"(cat|head|tail|less|more)\s+/etc/shadow"),
            "Shadow file access attempt",
        ),
        (
            re.compile(r">\s*/etc/passwd|echo.*>>\s*/etc/passwd"),
            "Password file modification attempt",
        ),
    ]

    COMMAND_SUBSTITUTION = re.compile(r"\$\([^)]+\)|`[^`]+`")
    SUBSTITUTION_BODY = re.compile(r"\$\(([^()]*)\)|`([^`]*)`")
    VARIABLE_EXPANSION = re.compile(r"\$[A-Za-z_][A-Za-z0-9_]*|\$\{[^}]+\}")
    BASE64_DECODE = re.compile(r"base64\s+(-d|--decode)", re.IGNORECASE)
    HEX_DECODE = re.compile(r"xxd\s+-r|od\s+-A")
    ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
    CHMOD_MODE = re.compile(r"^-[rwxXst]+$")

    def extract(self, tool_name: str, args: Dict[str, Any]) -> List[FileOperation]:
        """Extract file operations from a Bash tool call."""
        return self.analyze(args.get("command", "")).operations

    def analyze(self, command: str) -> BashAnalysisResult:
        """
        Analyze a raw shell command line.

        Hazard detection runs against the whole raw string and each $(...) or
        backtick body. Operations are collected per sub-command, substitution
        bodies included.

        Args:
            command: Raw command as the agent would run it

        Returns:
            BashAnalysisResult with operations, warnings and danger flag
        """
        result = BashAnalysisResult()
        if not command or not command.strip():
            return result

        # Substituted commands run too; check them like top-level ones
        nested = self.substitutions(command)

        for text in [command] + nested:
            reason = self._match_danger(text)
            if reason:
                result.dangerous = True
                result.danger_reason = reason
                logger.debug(f"Dangerous command pattern matched: {reason}")
                break

        result.warnings = self._detect_ambiguity(command)

        subcommands = self.split_commands(command)
        for body in nested:
            subcommands.extend(self.split_commands(body))
        for subcommand in subcommands:
            tokens = self.tokenize(subcommand)
            if tokens:
                result.operations.extend(self._classify(tokens))

        return result

    def _match_danger(self, text: str) -> Optional[str]:
        for pattern, reason in self.DANGEROUS_PATTERNS:
            if pattern.search(text):
                return reason
        return None

    def substitutions(self, command: str) -> List[str]:
        """
        Bodies of every $(...) and backtick substitution, innermost first.

        Quoting is ignored, so a literal '$(x)' is reported as well.
        """
        bodies: List[str] = []
        text = command
        while True:
            found = [m.group(1) if m.group(1) is not None else m.group(2)
                     for m in self.SUBSTITUTION_BODY.finditer(text)]
            if not found:
                return bodies
            bodies.extend(b for b in found if b.strip())
            text = self.SUBSTITUTION_BODY.sub(" _ ", text)

    def split_commands(self, command: str) -> List[str]:
        """
        Split a command line at control operators.

        Separators are &&, ||, ;, |, |&, background & and newlines. Operators
        inside quotes, $(...) or backticks do not split. An & that belongs to
        a redirection (2>&1, &>file) does not split either.
        """
        parts: List[str] = []
        current: List[str] = []
        in_single = in_double = in_backtick = False
        depth = 0
        i = 0
        n = len(command)

        def flush():
            text = "".join(current).strip()
            if text:
                parts.append(text)
            current.clear()

        while i < n:
            c = command[i]
            nxt = command[i + 1] if i + 1 < n else ""

            if in_single:
                current.append(c)
                if c == "'":
                    in_single = False
                i += 1
                continue

            if c == "\\" and nxt:
                current.append(c + nxt)
                i += 2
                continue

            if c == '"' and not in_backtick:
                in_double = not in_double
            elif c == "'" and not in_double and not in_backtick:
                in_single = True
            elif c == "`":
                in_backtick = not in_backtick
            elif c == "$" and nxt == "(":
                depth += 1
                current.append("$(")
                i += 2
                continue
            elif c == ")" and depth > 0:
                depth -= 1

            if in_double or in_backtick or depth > 0:
                current.append(c)
                i += 1
                continue

            two = command[i : i + 2]
            if two in ("&&", "||", "|&"):
                flush()
                i += 2
                continue
            if c in (";", "\n", "|"):
                flush()
                i += 1
                continue
            if c == "&":
                prev = command[i - 1] if i > 0 else ""
                if prev in (">", "<") or nxt == ">":
                    current.append(c)
                else:
                    flush()
                i += 1
                continue

            current.append(c)
            i += 1

        flush()
        return parts

    def tokenize(self, subcommand: str) -> List[Token]:
        """
        Tokenize one sub-command.

        Quotes are removed from words. Redirection operators become their own
        tokens, absorbing a leading file descriptor (2>) or & (&>).
        """
        tokens: List[Token] = []
        word: List[str] = []
        quoted = False
        in_single = in_double = False
        depth = 0
        i = 0
        n = len(subcommand)

        def flush():
            nonlocal quoted
            if word or quoted:
                tokens.append(("".join(word), False))
            word.clear()
            quoted = False

        while i < n:
            c = subcommand[i]
            nxt = subcommand[i + 1] if i + 1 < n else ""

            if in_single:
                if c == "'":
                    in_single = False
                else:
                    word.append(c)
                i += 1
                continue

            if in_double:
                if c == '"':
                    in_double = False
                elif c == "\\" and nxt in ('"', "\\", "$", "`"):
                    word.append(nxt)
                    i += 1
                else:
                    word.append(c)
                i += 1
                continue

            if c == "\\" and nxt:
                word.append(nxt)
                i += 2
                continue

            if c == "'":
                in_single = quoted = True
            elif c == '"':
                in_double = quoted = True
            elif c == "$" and nxt == "(":
                depth += 1
                word.append("$(")
                i += 2
                continue
            elif depth > 0:
                if c == ")":
                    depth -= 1
                word.append(c)
            elif c.isspace():
                flush()
            elif c in (">", "<"):
                prefix = ""
                current = "".join(word)
                if not quoted and (current.isdigit() or current == "&"):
                    prefix = current
                    word.clear()
                else:
                    flush()
                op, i = self._read_redirect(subcommand, i)
                tokens.append((prefix + op, True))
                continue
            else:
                word.append(c)
            i += 1

        flush()
        return tokens

    @staticmethod
    def _read_redirect(text: str, i: int) -> Tuple[str, int]:
        """Read a redirection operator starting at text[i]."""
        for op in ("<<<", "<<-", ">>", "<<", ">|", "<>", ">", "<"):
            if text.startswith(op, i):
                return op, i + len(op)
        return text[i], i + 1

    def _classify(self, tokens: List[Token]) -> List[FileOperation]:
        """Turn one tokenized sub-command into file operations."""
        operations: List[FileOperation] = []
        words: List[str] = []

        i = 0
        while i < len(tokens):
            text, is_op = tokens[i]
            if not is_op:
                words.append(text)
                i += 1
                continue

            target = None
            if i + 1 < len(tokens) and not tokens[i + 1][1]:
                target = tokens[i + 1][0]
                i += 1
            i += 1

            op = text.lstrip("0123456789&")
            if target is None or op.startswith("<<") or not self._is_path_operand(target):
                continue
            if op in (">", ">>", ">|", "<>"):
                operations.append(FileOperation(target, OperationKind.WRITE, text))
            elif op == "<":
                operations.append(FileOperation(target, OperationKind.READ, text))

        verb, args, wrappers = self._strip_prefixes(words)
        if verb:
            verb_ops = self._classify_verb(verb, args)
            kind = self._verb_kind(verb)
            if "xargs" in wrappers and kind is not None:
                # Operands arrive on stdin
                verb_ops.append(FileOperation(XARGS_OPERAND, kind, self._verb_name(verb)))
            operations = verb_ops + operations
        return operations

    def _strip_prefixes(self, words: List[str]) -> Tuple[Optional[str], List[str], List[str]]:
        """Drop leading VAR=value assignments and wrapper commands."""
        wrappers: List[str] = []
        i = 0
        while i < len(words):
            word = words[i]
            if self.ASSIGNMENT.match(word):
                i += 1
                continue
            wrapper = self._verb_name(word)
            if wrapper in self.WRAPPER_COMMANDS:
                wrappers.append(wrapper)
                i = self._skip_wrapper_options(wrapper, words, i + 1)
                continue
            return words[i], words[i + 1 :], wrappers
        return None, [], wrappers

    def _skip_wrapper_options(self, wrapper: str, words: List[str], i: int) -> int:
        """Index of the first word after a wrapper's options and positionals."""
        value_flags = self.WRAPPER_VALUE_FLAGS.get(wrapper, set())
        while i < len(words) and words[i].startswith("-") and words[i] != "-":
            flag = words[i]
            i += 1
            if flag == "--":
                break
            if flag in value_flags and i < len(words):
                i += 1
        return i + self.WRAPPER_POSITIONALS.get(wrapper, 0)

    @staticmethod
    def _verb_name(word: str) -> str:
        name = os.path.basename(word.replace("\\", "/")).lower()
        if name.endswith(".exe"):
            name = name[:-4]
        return name or word.lower()

    def _classify_verb(self, raw_verb: str, args: List[str]) -> List[FileOperation]:
        verb = self._verb_name(raw_verb)

        if verb in self.TEXT_COMMANDS:
            return []

        if verb == "sed":
            return self._classify_sed(args)

        if verb == "dd":
            ops = []
            for arg in args:
                if arg.startswith("if="):
                    ops.append(FileOperation(arg[3:], OperationKind.READ, verb))
                elif arg.startswith("of="):
                    ops.append(FileOperation(arg[3:], OperationKind.WRITE, verb))
            return ops

        operands = self._operands(verb, args)

        if verb in self.READ_COMMANDS:
            return [FileOperation(p, OperationKind.READ, verb) for p in operands]
        if verb in self.WRITE_COMMANDS or verb in self.PERMISSION_COMMANDS:
            return [FileOperation(p, OperationKind.WRITE, verb) for p in operands]
        if verb in self.DELETE_COMMANDS:
            return [FileOperation(p, OperationKind.DELETE, verb) for p in operands]
        if verb in self.MOVE_COMMANDS:
            return [FileOperation(p, OperationKind.WRITE, verb) for p in operands]
        if verb in self.COPY_COMMANDS:
            if not operands:
                return []
            ops = [FileOperation(p, OperationKind.READ, verb) for p in operands[:-1]]
            ops.append(FileOperation(operands[-1], OperationKind.WRITE, verb))
            return ops

        # Running a script by path executes that file
        if "/" in raw_verb.replace("\\", "/"):
            ops = [FileOperation(raw_verb, OperationKind.EXECUTE, verb)]
        elif operands:
            ops = [FileOperation(operands[0], OperationKind.UNKNOWN, verb)]
        else:
            ops = []

        # An unknown launcher (strace rm x, git rm x) still runs the known verb
        for j, arg in enumerate(args):
            if arg != "." and self._verb_kind(arg) is not None:
                return ops + self._classify_verb(arg, args[j + 1 :])
        return ops

    def _verb_kind(self, word: str) -> Optional[OperationKind]:
        """Operation kind of a known table verb, or None."""
        verb = self._verb_name(word)
        if verb in self.READ_COMMANDS:
            return OperationKind.READ
        if verb in self.DELETE_COMMANDS:
            return OperationKind.DELETE
        if verb == "sed" or verb in self.WRITE_COMMANDS or verb in self.PERMISSION_COMMANDS:
            return OperationKind.WRITE
        if verb in self.MOVE_COMMANDS or verb in self.COPY_COMMANDS:
            return OperationKind.WRITE
        return None

    def _classify_sed(self, args: List[str]) -> List[FileOperation]:
        in_place = any(a.startswith("-i") or a.startswith("--in-place") for a in args)
        has_script_flag = any(a in ("-e", "-f") or a.startswith("--expression") for a in args)
        operands = self._operands("sed", args)
        if not has_script_flag and operands:
            operands = operands[1:]
        kind = OperationKind.WRITE if in_place else OperationKind.READ
        return [FileOperation(p, kind, "sed") for p in operands]

    def _operands(self, verb: str, args: List[str]) -> List[str]:
        """Collect path operands, skipping flags and their values."""
        operands: List[str] = []
        value_flags: Set[str] = self.VALUE_FLAGS.get(verb, set())
        powershell = "-" in verb or verb in ("gc", "sc", "ac", "ni", "ri", "ci", "cpi", "mi")
        pattern_given = False
        end_of_flags = False

        i = 0
        while i < len(args):
            arg = args[i]
            if not end_of_flags and arg == "--":
                end_of_flags = True
                i += 1
                continue
            is_mode = verb == "chmod" and self.CHMOD_MODE.match(arg)
            if not end_of_flags and not is_mode and len(arg) > 1 and arg[0] == "-":
                lowered = arg.lower()
                if powershell and lowered in self.PS_PATH_PARAMS:
                    if i + 1 < len(args):
                        operands.append(args[i + 1])
                    i += 2
                    continue
                if (powershell and lowered in self.PS_VALUE_PARAMS) or arg in value_flags:
                    if arg in ("-e", "-f") or lowered == "-pattern":
                        pattern_given = True
                    i += 2
                    continue
                i += 1
                continue
            if arg.startswith("+") and verb == "attrib":
                i += 1
                continue
            if self._is_path_operand(arg):
                operands.append(arg)
            i += 1

        if verb in self.LEADING_NON_PATH and not pattern_given and operands:
            operands = operands[1:]
        return operands

    @staticmethod
    def _is_path_operand(token: str) -> bool:
        if not token or token == "-":
            return False
        if token.startswith("&"):
            return False
        return token.lower() not in ("/dev/null", "nul", "$null")

    def _detect_ambiguity(self, command: str) -> List[str]:
        warnings = []
        if self.COMMAND_SUBSTITUTION.search(command):
            warnings.append(
                "Command contains command substitution - paths may be dynamic"
            )
        if self.VARIABLE_EXPANSION.search(command):
            warnings.append(
                "Command contains variable expansion - paths may be dynamic"
            )
        if self.BASE64_DECODE.search(command):
            warnings.append("Command decodes base64 content - payload cannot be inspected")
        if self.HEX_DECODE.search(command):
            warnings.append("Command decodes hex content - payload cannot be inspected")
        if "\n" in command.strip():
            warnings.append("Command spans multiple lines - each line is checked separately")
        return warnings


# Global analyzer (singleton)
_analyzer: Optional[BashCommandAnalyzer] = None


def get_bash_analyzer() -> BashCommandAnalyzer:
    """Get or create the global command analyzer."""
    global _analyzer
    if _analyzer is None:
        _analyzer = BashCommandAnalyzer()
    return _analyzer
