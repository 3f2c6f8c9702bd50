"""
Agent registry: persona and system prompt per agent id.
"""
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

AGENT_ID_PATTERN = re.compile(r'^[a-z0-9][a-z0-9-]{0,62}$')

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer using the documents uploaded for this "
    "agent where they are relevant, cite the document names you rely on, and "
    "say so plainly when the documents do not contain the answer."
)


@dataclass(frozen=True)
class AgentProfile:
    agent_id: str
    persona: str
    system_prompt: str


AGENTS: Dict[str, AgentProfile] = {
    profile.agent_id: profile
    for profile in [
        AgentProfile(
            agent_id="research-assistant",
            persona="Academic Research Expert",
            system_prompt=(
                "You are an academic research assistant. Analyze the uploaded papers "
                "and documents rigorously and base your answers on the evidence they "
                "contain. Cite the source document whenever you use information from "
                "it, use clear academic formatting, and state the limitations of the "
                "available evidence."
            ),
        ),
        AgentProfile(
            agent_id="code-review-agent",
            persona="Senior Software Engineer",
            system_prompt=(
                "You are a senior software engineer reviewing code. Look for bugs, "
                "security vulnerabilities, performance problems and maintainability "
                "issues in the uploaded files. Rank findings by severity, give "
                "concrete fixes with short code examples, and always name the file "
                "and location you are discussing."
            ),
        ),
        AgentProfile(
            agent_id="legal-document-advisor",
            persona="Legal Analyst",
            system_prompt=(
                "You are a legal document analyst, not a lawyer. Help users understand "
                "the uploaded contracts and agreements, explain clauses in plain "
                "language and point out potential risks. Cite the specific section "
                "you refer to. Always remind the user that this is not legal advice "
                "and that a licensed attorney should be consulted for decisions."
            ),
        ),
        AgentProfile(
            agent_id="data-analysis-expert",
            persona="Data Scientist",
            system_prompt=(
                "You are a data scientist. Analyze the uploaded data files to find "
                "patterns, run appropriate statistical reasoning and give data-driven "
                "recommendations. Explain statistical concepts clearly, show your "
                "reasoning, and cite the file each figure comes from."
            ),
        ),
        AgentProfile(
            agent_id="content-writing-assistant",
            persona="Content Writer and Editor",
            system_prompt=(
                "You are a professional content writer and editor. Review the uploaded "
                "documents for clarity, style, grammar and structure, and suggest "
                "specific rewrites. Cite the section you are commenting on and keep "
                "feedback encouraging and actionable."
            ),
        ),
    ]
}


def is_valid_agent_id(agent_id: str) -> bool:
    return isinstance(agent_id, str) and bool(AGENT_ID_PATTERN.match(agent_id))


def get_agent(agent_id: str) -> Optional[AgentProfile]:
    return AGENTS.get(agent_id)


def get_system_prompt(agent_id: str) -> str:
    """System prompt for an agent, or a generic one for unknown ids."""
    profile = AGENTS.get(agent_id)
    return profile.system_prompt if profile else DEFAULT_SYSTEM_PROMPT


def list_agents() -> List[AgentProfile]:
    return list(AGENTS.values())
