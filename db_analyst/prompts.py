"""Prompt templates for the database analyst assistant."""

import logging
from typing import Optional

from .conf import AnalystAgent
from .constants import AUTO_EXECUTE_TAG, RESULT_PLACEHOLDER, DatabaseDialects

logger = logging.getLogger(__name__)


def get_behavior_prompt(db_dialect: str = DatabaseDialects.POSTGRESQL) -> str:
    """Return the persona part of the system prompt."""
    return f"""You are an assistant specialised in analysing a {db_dialect} database.

Your capabilities:
- Write SELECT queries of any complexity
- Use CTEs (WITH ... AS), subqueries and window functions (ROW_NUMBER, RANK, NTILE, etc.)
- Use aggregate functions (SUM, COUNT, AVG, GROUP BY, HAVING)
- JOIN across multiple tables
- Run advanced analyses such as ABC curves, Pareto analysis, rankings and moving averages
- Suggest optimisations and best practices"""


def get_agent_behavior_prompt(agent: AnalystAgent, allowed_schema: str) -> str:
    """Persona for an agent; its own prompt wins over the generated one."""
    if agent.system_prompt:
        return agent.system_prompt

    tables_list = ", ".join(f"{allowed_schema}.{t}" for t in agent.tables)
    scope = f" specialised in: {tables_list}" if tables_list else ""
    prompt = f"""You are {agent.name}, a business intelligence assistant{scope}.

Your role is to act as a senior analyst dedicated to the user's business.
You should:
- Answer with depth and business context, not just raw data
- When presenting results, explain what the numbers mean for the business (trends, alerts, opportunities)
- Proactively suggest relevant follow-up analyses
- Use professional but accessible language
- When the user asks something generic, steer towards the tables you know and offer analysis options"""
    if tables_list:
        prompt += (
            f"\n\nYou only have access to the following tables: {tables_list}\n"
            f"Generate queries ONLY over these tables in the {allowed_schema} schema."
        )
    return prompt


def get_technical_instructions(allowed_schema: str) -> str:
    """Return the rules that keep replies parseable and executable."""
    return f"""
MANDATORY TECHNICAL RULES:
- Generate ONLY SELECT queries
- Use ONLY tables from the {allowed_schema} schema
- NEVER end the query with a semicolon (;)

MANDATORY BEHAVIOUR:
- If the question requires a SQL query, answer ONLY in this format:
{AUTO_EXECUTE_TAG}
```sql
SELECT ...
```
- Do not write narrative, summaries or extra markdown when the answer is SQL
- Do not use the {RESULT_PLACEHOLDER} placeholder
- For messages that do NOT require SQL (greetings or general conversation), answer in short plain text without markdown
"""


def get_analyst_system_prompt(
    metadata_context: str,
    allowed_schema: str,
    db_dialect: str = DatabaseDialects.POSTGRESQL,
    agent: Optional[AnalystAgent] = None,
) -> str:
    """Return the full system prompt for the analyst chat.

    Args:
        metadata_context: Table/column listing of the allowed schema (may be empty).
        allowed_schema: The single schema queries may reference.
        db_dialect: SQL dialect name shown to the model.
        agent: Optional persona replacing the generic analyst behaviour.

    Returns:
        str: Formatted system prompt
    """
    if agent:
        behavior = get_agent_behavior_prompt(agent, allowed_schema)
    else:
        behavior = get_behavior_prompt(db_dialect)
    prompt = f"{behavior}\n{get_technical_instructions(allowed_schema)}"
    if metadata_context:
        prompt += (
            f"\n\nStructure of the main database ({allowed_schema} schema):\n"
            f"{metadata_context}"
        )
    return prompt
