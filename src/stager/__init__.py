from .buildpack import BuildpackInstaller, BuildpackRunner, BuildpackState
from .errors import StagingError
from .gem_cache import GemCache
from .gemfile_task import GemfileTask
from .git_gems import GitGemBuilder
from .lockfile import LockfileParser, LockfileResolver
from .model import Dependency, GitDependency, ReleaseInfo, StagingIdentity, StagingResult
from .process import ProcessRunner, SubprocessRunner
from .secure import SecureExecutor

__all__ = [
    "BuildpackInstaller",
    "BuildpackRunner",
    "BuildpackState",
    "StagingError",
    "GemCache",
    "GemfileTask",
    "GitGemBuilder",
    "LockfileParser",
    "LockfileResolver",
    "Dependency",
    "GitDependency",
    "ReleaseInfo",
    "StagingIdentity",
    "StagingResult",
    "ProcessRunner",
    "SubprocessRunner",
    "SecureExecutor",
]
