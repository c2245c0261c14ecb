"""Task configuration of this repository."""

from monorun import Config, Task, detect_by_file, run_command, with_options
from monorun.tasks import python


git_diff = Task(
    name="git-diff",
    usage="fail when the working tree has uncommitted changes",
    do=lambda ctx: run_command(ctx, "git", "diff", "--exit-code"),
    global_=True,
)

config = Config(
    auto=with_options(python.tasks(), detect=detect_by_file("pyproject.toml")),
    manual=[git_diff],
)
