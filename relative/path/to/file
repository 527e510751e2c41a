<content>
=== END FILE ===
- To remove a file write a single line:
=== DELETE: relative/path/to/file ===
- No markdown fences around files. Anything outside the markers is shown to the user as a note.
""".strip()

FRAMEWORK_HINTS = exhaustive(Framework, {
    Framework.FASTAPI: "Python FastAPI app. Entry point main.py exposing `app`, dependencies in requirements.txt.",
    Framework.FLASK: "Python Flask app. Entry point app.py, dependencies in requirements.txt.",
    Framework.EXPRESS: "Node.js Express app. Entry point index.js, package.json with a start script.",
    Framework.NEXTJS: "Next.js app router project with API routes, package.json with dev/build/start scripts.",
    Framework.REACT: "React (Vite) frontend talking to a small API, package.json with dev script.",
    Framework.VUE: "Vue 3 (Vite) project, package.json with dev script.",
    Framework.ANGULAR: "Angular project, package.json with start script.",
})

COMMAND_INSTRUCTIONS = exhaustive(CommandType, {
    CommandType.CREATE: (
        "Generate a complete, runnable backend project from scratch for the user's description. "
        "Include models, routes, validation, a README.md and the dependency manifest."
    ),
    CommandType.MODIFY: (
        "Change the existing project as requested. Only output files that change. "
        "Preserve existing behaviour unless asked otherwise."
    ),
    CommandType.CREATE_AND_LINK: (
        "Add the requested new functionality to the existing linked repository. "
        "Only output new or changed files."
    ),
    CommandType.FIX_ERROR: (
        "The user reports an error. Find the cause in the existing files and output the minimal fix. "
        "Only output files that change."
    ),
    CommandType.QUESTION: (
        "Answer the user's question about the project in plain text. Do NOT output any FILE or DELETE markers."
    ),
})


def _format_files(files: Dict[str, str]) -> str:
    parts = []
    used = 0
    for path in sorted(files)[:MAX_CONTEXT_FILES]:
        content = files[path] or ""
        if used + len(content) > MAX_CONTEXT_CHARS:
            parts.append(f"--- {path} (omitted, context budget reached)")
            continue
        used += len(content)
        parts.append(f"--- {path}\n{content}")
    return "\n\n".join(parts)


def build_system_prompt(command_type: CommandType, framework: Framework) -> str:
    return "\n\n".join([
        "You are a senior backend engineer generating API projects.",
        f"TARGET STACK: {FRAMEWORK_HINTS[framework]}",
        f"TASK: {COMMAND_INSTRUCTIONS[command_type]}",
        OUTPUT_RULES,
    ])


def build_generation_context(
    command_type: CommandType,
    framework: Framework,
    current_files: Dict[str, str],
    repo_url: str | None = None,
) -> Dict[str, Any]:
    """Context handed to the completion provider alongside the user prompt."""
    system_prompt = build_system_prompt(command_type, framework)
    if command_type != CommandType.CREATE and current_files:
        system_prompt += "\n\nCURRENT PROJECT FILES:\n" + _format_files(current_files)
    if repo_url:
        system_prompt += f"\n\nLINKED REPOSITORY: {repo_url}"
    return {
        "system_prompt": system_prompt,
        "command_type": command_type.value,
        "framework": framework.value,
        "file_paths": sorted(current_files),
    }
