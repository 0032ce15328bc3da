"""Skill indirection: two meta-tools front any number of grouped tools."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from agentloop.tools.base import Skill, Tool, ToolReturn
from agentloop.tools.schema import gemini_schema_for, strict_model

RUN_COMMAND_TOOL_NAME = "run_command"
LEARN_SKILL_TOOL_NAME = "learn_skill"


class RunCommandParams(BaseModel):
    command: str = Field(description="The command in format skillName/toolName")
    params: Any = Field(default=None, description="The parameters for the tool")


class LearnSkillParams(BaseModel):
    skillName: str = Field(description="The name of the skill to learn about")  # noqa: N815


def create_skill_tools(skills: list[Skill]) -> list[Tool[Any]]:
    """Build ``run_command`` and ``learn_skill`` over ``skills``."""

    skill_map = {skill.name: skill for skill in skills}
    tool_map = {f"{skill.name}/{t.name}": t for skill in skills for t in skill.tools}
    skill_names = ", ".join(skill.name for skill in skills)

    async def run_command(args: RunCommandParams) -> str | ToolReturn:
        command = args.command
        if "/" not in command:
            return (
                f'Invalid command format. Expected "skillName/toolName", got "{command}". '
                f"Available skills: {skill_names}"
            )
        skill_name, tool_name = command.split("/", 1)
        if skill_name not in skill_map:
            return f'Skill "{skill_name}" not found. Available skills: {skill_names}'
        target = tool_map.get(command)
        if target is None:
            return (
                f'Tool "{tool_name}" not found in skill "{skill_name}". '
                f"Please call {LEARN_SKILL_TOOL_NAME}."
            )
        try:
            params = strict_model(target.parameters).model_validate(args.params or {})
        except ValidationError as exc:
            return f"Invalid parameters for {command}: {exc}"
        return await target.handler(params)

    async def learn_skill(args: LearnSkillParams) -> str:
        skill = skill_map.get(args.skillName)
        if skill is None:
            return f'Skill "{args.skillName}" not found. Available skills: {skill_names}'
        return json.dumps(
            {
                "name": skill.name,
                "description": skill.description,
                "instructions": skill.instructions,
                "tools": [
                    {
                        "name": t.name,
                        "description": t.description,
                        "parameters": gemini_schema_for(t.parameters),
                    }
                    for t in skill.tools
                ],
            },
            indent=2,
        )

    return [
        Tool(
            name=RUN_COMMAND_TOOL_NAME,
            description="Execute a tool from a specific skill. Format: skillName/toolName",
            parameters=RunCommandParams,
            handler=run_command,
        ),
        Tool(
            name=LEARN_SKILL_TOOL_NAME,
            description="Get detailed information about a skill including its instructions and available tools",
            parameters=LearnSkillParams,
            handler=learn_skill,
        ),
    ]


def skills_catalogue(skills: list[Skill]) -> str:
    """System-prompt section listing skill names and descriptions only."""

    lines = [f"- {skill.name}: {skill.description}" for skill in skills]
    return (
        "You have skills. Call "
        f"{LEARN_SKILL_TOOL_NAME} to see a skill's tools, then {RUN_COMMAND_TOOL_NAME} "
        'with command "skillName/toolName" to use one.\n' + "\n".join(lines)
    )
