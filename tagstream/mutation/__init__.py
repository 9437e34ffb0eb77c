"""
Applying responses to the working tree: files, git, dependencies, SQL, deploys.
"""

from .adapters import (
    ActionAdapters,
    DefaultActionAdapters,
    DeployedFunctionInfo,
    PackageManagerInstaller,
    SupabaseManagementClient,
    write_migration_file,
)
from .apply_engine import DeployPlan, MutationApplyEngine, MutationResult, OutputNotice, build_commit_message
from .git_ops import GitAuthor, GitRepository
from .supabase_paths import extract_function_name_from_path, is_server_function, is_shared_server_module

__all__ = [
    "ActionAdapters",
    "DefaultActionAdapters",
    "DeployPlan",
    "DeployedFunctionInfo",
    "GitAuthor",
    "GitRepository",
    "MutationApplyEngine",
    "MutationResult",
    "OutputNotice",
    "PackageManagerInstaller",
    "SupabaseManagementClient",
    "build_commit_message",
    "extract_function_name_from_path",
    "is_server_function",
    "is_shared_server_module",
    "write_migration_file",
]
