"""
订阅执行器

把一次订阅执行作为独立子进程启动：
- stdout/stderr 合并写入新的日志文件（<log_dir>/<alias>/<时间>.log）
- 立即返回带 pid 的执行句柄，不阻塞调用方
- 后台线程等待进程退出，写入结束标记后通过回调上报退出码和耗时
- kill 发送 SIGTERM 后立即返回，超过宽限时间仍未退出再由定时线程升级为 SIGKILL

执行器本身不关心拉取脚本的细节，只负责拼装命令并调用外部 runner（默认 `ql`）。
"""
import logging
import os
import shlex
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from app.services.exceptions import InfrastructureError

logger = logging.getLogger(__name__)

LOG_TIME_FORMAT = "%Y-%m-%d-%H-%M-%S"


@dataclass
class ExecutionResult:
    """一次执行的结果"""
    subscription_id: int
    exit_code: Optional[int]
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    killed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.killed


class ExecutionHandle:
    """运行中子进程的句柄"""

    def __init__(
        self,
        subscription_id: int,
        alias: str,
        process: subprocess.Popen,
        log_file: IO[bytes],
        log_path: str,
    ):
        self.subscription_id = subscription_id
        self.alias = alias
        self.process = process
        self.log_file = log_file
        self.log_path = log_path
        self.started_at = datetime.utcnow()
        self._started_monotonic = time.monotonic()
        self.killed = False
        self.result: Optional[ExecutionResult] = None
        self._done = threading.Event()
        self._escalation: Optional[threading.Timer] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_running(self) -> bool:
        return self.process.poll() is None

    def wait(self, timeout: Optional[float] = None) -> Optional[ExecutionResult]:
        """等待执行结束并完成收尾（写入结束标记、回调），超时返回 None"""
        if self._done.wait(timeout):
            return self.result
        return None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started_monotonic

    def __repr__(self) -> str:
        return f"<ExecutionHandle subscription={self.subscription_id} pid={self.pid}>"


CompletionCallback = Callable[[ExecutionHandle, ExecutionResult], None]


def _quote(value: Optional[str]) -> str:
    return shlex.quote(value or "")


def safe_path_name(alias: Optional[str]) -> str:
    """把 alias 转成单层目录/文件名：去掉路径分隔符，纯点号的名字（. / ..）整体替换"""
    name = (alias or "").strip()
    for sep in (os.sep, os.altsep):
        if sep:
            name = name.replace(sep, "_")
    if not name:
        return "subscription"
    if set(name) == {"."}:
        return "_" * len(name)
    return name


def build_pull_url(subscription: Any) -> str:
    """根据拉取方式生成实际使用的地址，user-pwd 方式会把账号密码写入 http(s) 地址"""
    url = subscription.url or ""
    pull_option = subscription.pull_option or {}
    if subscription.pull_type != "user-pwd":
        return url

    username = pull_option.get("username")
    password = pull_option.get("password")
    parts = urlsplit(url)
    if not username or parts.scheme not in ("http", "https"):
        return url

    credentials = quote(str(username), safe="")
    if password:
        credentials = f"{credentials}:{quote(str(password), safe='')}"
    host = parts.netloc.rsplit("@", 1)[-1]
    return urlunsplit((parts.scheme, f"{credentials}@{host}", parts.path, parts.query, parts.fragment))


def build_pull_command(subscription: Any, command: str = "ql") -> str:
    """
    拼装订阅的执行命令

    - file 类型: ql raw "<url>"
    - 仓库类型: ql repo "<url>" "<whitelist>" "<blacklist>" "<dependences>" "<branch>" "<extensions>"

    sub_before / sub_after 会包在主命令前后执行。
    """
    url = build_pull_url(subscription)
    if subscription.type == "file":
        main = f"{command} raw {_quote(url)}"
    else:
        args = [
            url,
            subscription.whitelist,
            subscription.blacklist,
            subscription.dependences,
            subscription.branch,
            subscription.extensions,
        ]
        main = f"{command} repo " + " ".join(_quote(a) for a in args)

    parts: List[str] = []
    if subscription.sub_before:
        parts.append(f"{subscription.sub_before.strip()} && ")
    parts.append(main)
    if subscription.sub_after:
        parts.append(f"; {subscription.sub_after.strip()}")
    return "".join(parts)


class ProcessRunner:
    """
    子进程执行器

    Args:
        log_dir: 日志根目录，每个订阅按 alias 分目录
        work_dir: 子进程工作目录（拉取的仓库/脚本所在目录）
        command: 外部 runner 命令
        kill_grace_seconds: SIGTERM 之后等待退出的宽限时间
        command_builder: 自定义命令拼装函数，默认 build_pull_command
        env: 额外注入的环境变量
    """

    def __init__(
        self,
        log_dir: str,
        work_dir: str,
        command: str = "ql",
        kill_grace_seconds: float = 10.0,
        command_builder: Optional[Callable[[Any], str]] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        self.log_dir = Path(log_dir).expanduser()
        self.work_dir = Path(work_dir).expanduser()
        self.command = command
        self.kill_grace_seconds = kill_grace_seconds
        self.command_builder = command_builder or (lambda sub: build_pull_command(sub, self.command))
        self.env = env or {}

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.work_dir.mkdir(parents=True, exist_ok=True)

    # ---- 日志 ----

    def _alias_log_dir(self, alias: str) -> Path:
        return self.log_dir / safe_path_name(alias)

    def _new_log_path(self, alias: str) -> Path:
        directory = self._alias_log_dir(alias)
        directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime(LOG_TIME_FORMAT)
        path = directory / f"{stamp}.log"
        suffix = 1
        while path.exists():
            path = directory / f"{stamp}-{suffix}.log"
            suffix += 1
        return path

    def read_log(self, log_path: Optional[str], lines: Optional[int] = None) -> str:
        """读取日志全文，或最后 lines 行"""
        if not log_path:
            return ""
        path = Path(log_path)
        if not path.is_file():
            return ""
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            if lines is None:
                return f.read()
            if lines <= 0:
                return ""
            return "".join(deque(f, maxlen=lines))

    def list_logs(self, alias: str) -> List[Dict[str, Any]]:
        """列出订阅的历史日志（最新的在前）"""
        directory = self._alias_log_dir(alias)
        if not directory.is_dir():
            return []
        logs = []
        for path in directory.glob("*.log"):
            stat = path.stat()
            logs.append({
                "filename": path.name,
                "path": str(path),
                "size": stat.st_size,
                "modified_at": datetime.fromtimestamp(stat.st_mtime),
            })
        logs.sort(key=lambda item: (item["modified_at"], item["filename"]), reverse=True)
        return logs

    # ---- 执行 ----

    def _build_env(self, subscription: Any) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.env)
        env.update({
            "SUBSCRIPTION_ID": str(subscription.id),
            "SUBSCRIPTION_ALIAS": subscription.alias or "",
            "SUBSCRIPTION_NAME": subscription.name or "",
        })

        pull_option = subscription.pull_option or {}
        private_key = pull_option.get("private_key")
        if subscription.pull_type == "ssh-key" and private_key:
            ssh_dir = self.work_dir / ".ssh"
            ssh_dir.mkdir(parents=True, exist_ok=True)
            key_path = ssh_dir / safe_path_name(subscription.alias)
            key_path.write_text(private_key.rstrip("\n") + "\n", encoding="utf-8")
            os.chmod(key_path, 0o600)
            env["GIT_SSH_COMMAND"] = (
                f"ssh -i {shlex.quote(str(key_path))} -o StrictHostKeyChecking=no -o IdentitiesOnly=yes"
            )
        return env

    def execute(self, subscription: Any, on_complete: Optional[CompletionCallback] = None) -> ExecutionHandle:
        """
        启动一次执行，立即返回句柄

        Raises:
            InfrastructureError: 日志文件无法创建或进程启动失败
        """
        command = self.command_builder(subscription)
        log_prefix = f"[{subscription.alias}:{subscription.id}]"

        try:
            log_path = self._new_log_path(subscription.alias)
            log_file = open(log_path, "ab", buffering=0)
        except OSError as e:
            logger.error(f"{log_prefix} Failed to open log file: {e}")
            raise InfrastructureError(f"Failed to open log file for subscription {subscription.id}: {e}") from e

        header = f"## Execution started at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n$ {command}\n\n"
        log_file.write(header.encode("utf-8"))

        popen_kwargs: Dict[str, Any] = {}
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True

        try:
            process = subprocess.Popen(
                command,
                shell=True,
                cwd=str(self.work_dir),
                env=self._build_env(subscription),
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                **popen_kwargs,
            )
        except (OSError, ValueError) as e:
            log_file.write(f"\n## Failed to start: {e}\n".encode("utf-8"))
            log_file.close()
            logger.error(f"{log_prefix} Failed to spawn process: {e}")
            raise InfrastructureError(f"Failed to spawn subscription {subscription.id}: {e}") from e

        handle = ExecutionHandle(
            subscription_id=subscription.id,
            alias=subscription.alias,
            process=process,
            log_file=log_file,
            log_path=str(log_path),
        )
        logger.info(f"{log_prefix} Started pid={process.pid} log={log_path}")

        watcher = threading.Thread(
            target=self._watch,
            args=(handle, on_complete),
            name=f"subscription-{subscription.id}-watcher",
            daemon=True,
        )
        watcher.start()
        return handle

    def _watch(self, handle: ExecutionHandle, on_complete: Optional[CompletionCallback]) -> None:
        exit_code = handle.process.wait()
        if handle._escalation is not None:
            handle._escalation.cancel()
        finished_at = datetime.utcnow()
        duration = round(handle.elapsed, 2)

        result = ExecutionResult(
            subscription_id=handle.subscription_id,
            exit_code=exit_code,
            started_at=handle.started_at,
            finished_at=finished_at,
            duration_seconds=duration,
            killed=handle.killed,
        )

        marker = (
            f"\n## Execution finished at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
            f" exit_code={exit_code} duration={duration}s"
        )
        if handle.killed:
            marker += " (killed)"
        try:
            handle.log_file.write((marker + "\n").encode("utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"[{handle.alias}:{handle.subscription_id}] Failed to write completion marker: {e}")
        finally:
            handle.log_file.close()

        handle.result = result
        log_prefix = f"[{handle.alias}:{handle.subscription_id}]"
        if exit_code == 0:
            logger.info(f"{log_prefix} Completed in {duration:.2f}s")
        else:
            logger.warning(f"{log_prefix} Exited with code {exit_code} after {duration:.2f}s")

        try:
            if on_complete is not None:
                on_complete(handle, result)
        except Exception:
            logger.exception(f"{log_prefix} Completion callback failed")
        finally:
            handle._done.set()

    # ---- 终止 ----

    def _signal(self, pid: int, sig: int) -> None:
        # 子进程以新会话启动，pgid 即 pid，整组发送以覆盖 shell 派生的子进程
        try:
            if hasattr(os, "killpg"):
                os.killpg(pid, sig)
            else:
                os.kill(pid, sig)
        except ProcessLookupError:
            pass

    @staticmethod
    def _escalate_later(
        grace: float,
        still_running: Callable[[], bool],
        force: Callable[[], None],
        label: str,
    ) -> threading.Timer:
        """宽限时间到期后仍未退出则强制终止，不阻塞调用方"""
        def escalate():
            if still_running():
                logger.warning(f"{label} did not stop gracefully, killing")
                force()

        timer = threading.Timer(grace, escalate)
        timer.daemon = True
        timer.start()
        return timer

    def kill(self, handle: ExecutionHandle, grace_seconds: Optional[float] = None) -> bool:
        """
        终止执行：发送 SIGTERM 后立即返回，宽限时间后仍在运行则发送 SIGKILL

        进程真正退出后由监视线程照常写入结束标记并回调。

        Returns:
            True 表示发送过终止信号，False 表示进程已经退出
        """
        grace = self.kill_grace_seconds if grace_seconds is None else grace_seconds
        if not handle.is_running():
            return False

        handle.killed = True
        log_prefix = f"[{handle.alias}:{handle.subscription_id}]"
        logger.info(f"{log_prefix} Terminating pid={handle.pid} (grace period: {grace}s)")
        self._signal(handle.pid, signal.SIGTERM)

        handle._escalation = self._escalate_later(
            grace,
            handle.is_running,
            lambda: self._signal(handle.pid, getattr(signal, "SIGKILL", signal.SIGTERM)),
            f"{log_prefix} pid={handle.pid}",
        )
        return True

    def kill_pid(self, pid: int, grace_seconds: Optional[float] = None) -> bool:
        """终止不是由本执行器启动的进程（例如外部上报的 pid），同样不等待其退出"""
        grace = self.kill_grace_seconds if grace_seconds is None else grace_seconds
        if not _is_process_running(pid):
            return False

        logger.info(f"Terminating external pid={pid} (grace period: {grace}s)")
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return False

        self._escalate_later(
            grace,
            lambda: _is_process_running(pid),
            lambda: _send_quietly(pid, getattr(signal, "SIGKILL", signal.SIGTERM)),
            f"External pid={pid}",
        )
        return True


def _send_quietly(pid: int, sig: int) -> None:
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        pass


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)
        return True
    except OSError:
        return False
