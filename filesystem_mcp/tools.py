from __future__ import annotations

import difflib
import logging
import os
import platform
import re
import socket
import stat
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .auth import RequestContext
from .errors import PolicyError, ToolArgumentError
from .policy import PolicyEngine, Tool, canonicalize
from .processes import ProcessSupervisor

LOG = logging.getLogger('filesystem-mcp')

MAX_READ_BYTES = 2 * 1024 * 1024
MAX_SEARCH_FILE_BYTES = 2 * 1024 * 1024
_NON_ALNUM = re.compile(r'[^a-z0-9]+')


def sanitize_tool_prefix(name: str) -> str:
    s = _NON_ALNUM.sub('_', (name or '').strip().lower()).strip('_')
    return s + '_' if s else ''


def _require_str(args: Dict[str, Any], key: str) -> str:
    v = args.get(key)
    if not isinstance(v, str) or not v:
        raise ToolArgumentError(f'{key} parameter is required')
    return v


def _optional_int(args: Dict[str, Any], key: str, default: Optional[int] = None) -> Optional[int]:
    v = args.get(key)
    if v is None:
        return default
    if isinstance(v, bool):
        raise ToolArgumentError(f'{key} must be an integer')
    try:
        return int(v)
    except (TypeError, ValueError):
        raise ToolArgumentError(f'{key} must be an integer')


def _entry_type(mode: int) -> str:
    if stat.S_ISLNK(mode):
        return 'symlink'
    if stat.S_ISDIR(mode):
        return 'dir'
    return 'file'


def tool_schemas() -> List[Dict[str, Any]]:
    path_prop = {'type': 'string', 'description': 'Absolute or relative filesystem path.'}
    return [
        {
            'name': Tool.LS.tool_name,
            'title': 'List Directory',
            'description': 'List directory entries with type and size.',
            'inputSchema': {'type': 'object', 'properties': {'path': path_prop}, 'required': ['path']},
        },
        {
            'name': Tool.READ_FILE.tool_name,
            'title': 'Read File',
            'description': 'Read a text file, optionally a 1-based inclusive line range.',
            'inputSchema': {
                'type': 'object',
                'properties': {
                    'path': path_prop,
                    'start_line': {'type': 'integer', 'minimum': 1},
                    'end_line': {'type': 'integer', 'minimum': 1},
                },
                'required': ['path'],
            },
        },
        {
            'name': Tool.SEARCH.tool_name,
            'title': 'Search Files',
            'description': 'Find lines containing a literal string in files under a directory.',
            'inputSchema': {
                'type': 'object',
                'properties': {
                    'path': path_prop,
                    'query': {'type': 'string'},
                    'max_results': {'type': 'integer', 'default': 100},
                },
                'required': ['path', 'query'],
            },
        },
        {
            'name': Tool.DIFF.tool_name,
            'title': 'Diff Files',
            'description': 'Unified diff between two files.',
            'inputSchema': {
                'type': 'object',
                'properties': {'path_a': path_prop, 'path_b': path_prop},
                'required': ['path_a', 'path_b'],
            },
        },
        {
            'name': Tool.WRITE_FILE.tool_name,
            'title': 'Write File',
            'description': 'Create or overwrite a file; parent directories are created.',
            'inputSchema': {
                'type': 'object',
                'properties': {'path': path_prop, 'content': {'type': 'string'}},
                'required': ['path', 'content'],
            },
        },
        {
            'name': Tool.EDIT_FILE.tool_name,
            'title': 'Edit File',
            'description': 'Replace exactly one occurrence of old_text with new_text.',
            'inputSchema': {
                'type': 'object',
                'properties': {'path': path_prop, 'old_text': {'type': 'string'}, 'new_text': {'type': 'string'}},
                'required': ['path', 'old_text', 'new_text'],
            },
        },
        {
            'name': Tool.EXEC.tool_name,
            'title': 'Execute Command',
            'description': 'Run a shell command; background=true returns a process id immediately.',
            'inputSchema': {
                'type': 'object',
                'properties': {
                    'command': {'type': 'string'},
                    'workdir': path_prop,
                    'timeout': {'type': 'number', 'description': 'Seconds (foreground default from config).'},
                    'env': {'type': 'object'},
                    'background': {'type': 'boolean', 'default': False},
                },
                'required': ['command'],
            },
        },
        {
            'name': Tool.PROCESS_STATUS.tool_name,
            'title': 'Process Status',
            'description': 'Status and output of one background process, or a list of all when id is omitted.',
            'inputSchema': {'type': 'object', 'properties': {'id': {'type': 'string'}}},
        },
        {
            'name': Tool.PROCESS_KILL.tool_name,
            'title': 'Kill Process',
            'description': 'Forcibly terminate a running background process.',
            'inputSchema': {'type': 'object', 'properties': {'id': {'type': 'string'}}, 'required': ['id']},
        },
        {
            'name': Tool.SYSTEM_INFO.tool_name,
            'title': 'System Info',
            'description': 'Host platform, interpreter and working directory.',
            'inputSchema': {'type': 'object', 'properties': {}},
        },
    ]


class ToolsManager:
    """Dispatches tool calls; every resource-bearing handler checks policy first."""

    def __init__(self, policy: PolicyEngine, processes: ProcessSupervisor, exec_timeout: float = 30.0, server_name: str = '', workspace: Optional[str] = None):
        self.policy = policy
        self.workspace = workspace
        self.processes = processes
        self.exec_timeout = exec_timeout
        self.prefix = sanitize_tool_prefix(server_name)
        self._handlers: Dict[str, Callable[[Dict[str, Any], RequestContext], Dict[str, Any]]] = {
            Tool.LS.tool_name: self.handle_ls,
            Tool.READ_FILE.tool_name: self.handle_read_file,
            Tool.SEARCH.tool_name: self.handle_search,
            Tool.DIFF.tool_name: self.handle_diff,
            Tool.WRITE_FILE.tool_name: self.handle_write_file,
            Tool.EDIT_FILE.tool_name: self.handle_edit_file,
            Tool.EXEC.tool_name: self.handle_exec,
            Tool.PROCESS_STATUS.tool_name: self.handle_process_status,
            Tool.PROCESS_KILL.tool_name: self.handle_process_kill,
            Tool.SYSTEM_INFO.tool_name: self.handle_system_info,
        }

    def list_tools(self) -> List[Dict[str, Any]]:
        out = []
        for t in tool_schemas():
            t = dict(t)
            t['name'] = self.prefix + t['name']
            out.append(t)
        return out

    def resolve_name(self, name: str) -> str:
        if self.prefix and name.startswith(self.prefix):
            return name[len(self.prefix):]
        return name

    def call(self, name: str, arguments: Optional[Dict[str, Any]], ctx: RequestContext) -> Dict[str, Any]:
        bare = self.resolve_name(name or '')
        handler = self._handlers.get(bare)
        if handler is None:
            raise PolicyError(PolicyError.UNKNOWN_TOOL, f'access denied: unknown tool {name!r}')
        if arguments is not None and not isinstance(arguments, dict):
            raise ToolArgumentError('arguments must be an object')
        return handler(arguments or {}, ctx)

    def _authorize(self, tool: Tool, paths: List[str], ctx: RequestContext) -> List[str]:
        """Canonicalize `paths`, enforce policy on them and return the canonical forms."""
        canonical = [canonicalize(p) for p in paths]
        self.policy.enforce(tool.tool_name, canonical, ctx.claims)
        return canonical

    # ---- read tools ----

    def handle_ls(self, args: Dict[str, Any], ctx: RequestContext) -> Dict[str, Any]:
        (path,) = self._authorize(Tool.LS, [_require_str(args, 'path')], ctx)
        p = Path(path)
        if not p.is_dir():
            raise ToolArgumentError(f'not a directory: {path}')
        entries = []
        for child in sorted(p.iterdir(), key=lambda c: c.name):
            try:
                st = child.lstat()
            except OSError:
                continue
            entries.append({'name': child.name, 'type': _entry_type(st.st_mode), 'size': st.st_size})
        return {'path': path, 'entries': entries, 'total': len(entries)}

    def handle_read_file(self, args: Dict[str, Any], ctx: RequestContext) -> Dict[str, Any]:
        (path,) = self._authorize(Tool.READ_FILE, [_require_str(args, 'path')], ctx)
        start = _optional_int(args, 'start_line')
        end = _optional_int(args, 'end_line')
        p = Path(path)
        if not p.is_file():
            raise ToolArgumentError(f'not a file: {path}')
        if p.stat().st_size > MAX_READ_BYTES:
            raise ToolArgumentError(f'file too large to read ({p.stat().st_size} bytes)')
        text = p.read_text(encoding='utf-8', errors='replace')
        if start is None and end is None:
            return {'path': path, 'content': text}
        lines = text.splitlines(keepends=True)
        s = max(1, start or 1)
        e = min(len(lines), end or len(lines))
        if s > e and lines:
            raise ToolArgumentError('start_line must not exceed end_line')
        return {'path': path, 'start_line': s, 'end_line': e, 'content': ''.join(lines[s - 1:e])}

    def handle_search(self, args: Dict[str, Any], ctx: RequestContext) -> Dict[str, Any]:
        (root,) = self._authorize(Tool.SEARCH, [_require_str(args, 'path')], ctx)
        query = _require_str(args, 'query')
        max_results = max(1, min(_optional_int(args, 'max_results', 100), 1000))
        hits: List[Dict[str, Any]] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for fname in sorted(filenames):
                fp = os.path.join(dirpath, fname)
                # rules may cover the root but not every file beneath it
                if not self.policy.check(Tool.SEARCH.tool_name, [fp], ctx.claims).allowed:
                    continue
                try:
                    if os.path.getsize(fp) > MAX_SEARCH_FILE_BYTES:
                        continue
                    with open(fp, 'r', encoding='utf-8') as f:
                        for lineno, line in enumerate(f, 1):
                            if query in line:
                                hits.append({'file': fp, 'line': lineno, 'preview': line.rstrip('\n')[:500]})
                                if len(hits) >= max_results:
                                    return {'hits': hits, 'truncated': True}
                except (OSError, UnicodeDecodeError):
                    continue
        return {'hits': hits, 'truncated': False}

    def handle_diff(self, args: Dict[str, Any], ctx: RequestContext) -> Dict[str, Any]:
        path_a, path_b = self._authorize(Tool.DIFF, [_require_str(args, 'path_a'), _require_str(args, 'path_b')], ctx)
        for p in (path_a, path_b):
            if not Path(p).is_file():
                raise ToolArgumentError(f'not a file: {p}')
        a = Path(path_a).read_text(encoding='utf-8', errors='replace').splitlines(keepends=True)
        b = Path(path_b).read_text(encoding='utf-8', errors='replace').splitlines(keepends=True)
        diff = ''.join(difflib.unified_diff(a, b, fromfile=path_a, tofile=path_b))
        return {'diff': diff, 'identical': not diff}

    # ---- write tools ----

    def handle_write_file(self, args: Dict[str, Any], ctx: RequestContext) -> Dict[str, Any]:
        (path,) = self._authorize(Tool.WRITE_FILE, [_require_str(args, 'path')], ctx)
        content = args.get('content')
        if not isinstance(content, str):
            raise ToolArgumentError('content parameter is required')
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding='utf-8')
        return {'path': path, 'bytes': len(content.encode('utf-8'))}

    def handle_edit_file(self, args: Dict[str, Any], ctx: RequestContext) -> Dict[str, Any]:
        (path,) = self._authorize(Tool.EDIT_FILE, [_require_str(args, 'path')], ctx)
        old_text = _require_str(args, 'old_text')
        new_text = args.get('new_text')
        if not isinstance(new_text, str):
            raise ToolArgumentError('new_text parameter is required')
        p = Path(path)
        if not p.is_file():
            raise ToolArgumentError(f'not a file: {path}')
        try:
            text = p.read_text(encoding='utf-8')
        except UnicodeDecodeError:
            raise ToolArgumentError(f'not a UTF-8 text file: {path}')
        count = text.count(old_text)
        if count != 1:
            raise ToolArgumentError(f'old_text must occur exactly once (found {count})')
        p.write_text(text.replace(old_text, new_text, 1), encoding='utf-8')
        return {'path': path, 'replaced': 1}

    # ---- exec tools ----

    def handle_exec(self, args: Dict[str, Any], ctx: RequestContext) -> Dict[str, Any]:
        command = _require_str(args, 'command')
        workdir = args.get('workdir') or None
        if workdir is not None and not isinstance(workdir, str):
            raise ToolArgumentError('workdir must be a string')
        # without a workdir the command runs (and is checked) in the workspace or server cwd
        (checked,) = self._authorize(Tool.EXEC, [workdir or self.workspace or os.getcwd()], ctx)
        workdir = checked if (workdir or self.workspace) else None

        env = args.get('env')
        if env is not None and not isinstance(env, dict):
            raise ToolArgumentError('env must be an object')
        timeout = args.get('timeout')
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                raise ToolArgumentError('timeout must be a positive number')

        if args.get('background'):
            pid = self.processes.start_background(command, workdir, env, timeout=timeout)
            return {'id': pid, 'status': 'running', 'command': command}

        res = self.processes.run_foreground(command, workdir, env, timeout=timeout or self.exec_timeout)
        return res.to_dict()

    def handle_process_status(self, args: Dict[str, Any], ctx: RequestContext) -> Dict[str, Any]:
        self._authorize(Tool.PROCESS_STATUS, [], ctx)
        pid = args.get('id')
        if not pid:
            entries = [s.to_dict(include_output=False) for s in self.processes.list()]
            return {'processes': entries, 'total': len(entries)}
        return self.processes.status(str(pid)).to_dict()

    def handle_process_kill(self, args: Dict[str, Any], ctx: RequestContext) -> Dict[str, Any]:
        pid = _require_str(args, 'id')
        self._authorize(Tool.PROCESS_KILL, [], ctx)
        self.processes.kill(pid)
        return {'id': pid, 'killed': True}

    # ---- path-free ----

    def handle_system_info(self, args: Dict[str, Any], ctx: RequestContext) -> Dict[str, Any]:
        self._authorize(Tool.SYSTEM_INFO, [], ctx)
        return {
            'platform': platform.platform(),
            'system': platform.system(),
            'machine': platform.machine(),
            'hostname': socket.gethostname(),
            'python': sys.version.split()[0],
            'cwd': os.getcwd(),
            'pid': os.getpid(),
        }
