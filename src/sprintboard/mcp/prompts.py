"""MCP prompt templates for common sprint workflows."""

from sprintboard.mcp.server import mcp


@mcp.prompt()
def sprint_report(project: str) -> str:
    """Generate a prompt for a sprint progress report."""
    return (
        f"Please write a progress report for the active sprint of the '{project}' project.\n\n"
        f"Use list_sprints to find the ACTIVE sprint, sprint_summary for its counts and "
        f"list_tasks with its sprint_id for the tasks. Then provide:\n"
        f"1. Overall progress (done and live versus total)\n"
        f"2. Tasks in progress and who owns them\n"
        f"3. Blocked tasks and what is known about why (check their comments with get_task)\n"
        f"4. Tasks that have been split more than once (use get_task_chain)\n"
        f"5. Risks to finishing the sprint on time"
    )


@mcp.prompt()
def uat_triage(sprint_id: str) -> str:
    """Generate a prompt to decide how a sprint should enter UAT."""
    return (
        f"Sprint '{sprint_id}' is about to move to UAT.\n\n"
        f"Use sprint_summary and list_tasks to see which tasks are still TODO, "
        f"IN_PROGRESS or BLOCKED. For each of them, read its comments with get_task.\n"
        f"Then recommend one action for move_sprint_to_uat:\n"
        f"- close_all if the remaining work is no longer needed\n"
        f"- move_all if the work should carry on unchanged in the next sprint\n"
        f"- split_all if the finished part should be closed and the rest continued as new tasks\n\n"
        f"Explain the recommendation in a few sentences and list any task that deserves "
        f"different handling than the rest. Do not call move_sprint_to_uat until I confirm."
    )
