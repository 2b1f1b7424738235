"""LLM review engine over the OpenAI chat-completions API.

``review()`` turns one file's diff block into a markdown review;
``summarize_pull_request()`` produces the overall PR assessment.

Rate-limit responses are retried in a bounded loop with exponential
backoff (``base_delay * 2**attempt``); when the retries run out the
``LLMRateLimitError`` propagates so the batch runner records a per-file
failure.  Timeouts and other API errors are not retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

import openai
from openai import AsyncOpenAI

from diffwarden.core.batch_runner import ReviewResult
from diffwarden.core.exceptions import LLMError, LLMRateLimitError, LLMTimeoutError
from diffwarden.core.policy import AuthorPreferences, PolicyLookup

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5"

_LANGUAGE_INSTRUCTIONS: dict[str, str] = {
    "ko": (
        "**IMPORTANT**: You must write your ENTIRE response in Korean (한국어). "
        "All sections, explanations, and code comments should be in Korean."
    ),
    "en": "**IMPORTANT**: Write your response in English.",
}

_REVIEW_INSTRUCTIONS = """Analyze the provided code changes and provide:
1. A summary of the changes
2. Potential bugs or issues
3. Code quality suggestions
4. Security concerns if any
5. Performance improvements if applicable

**CRITICAL**: When you identify bugs, security issues, or dangerous code:
- Provide the FIXED CODE with proper syntax
- Show a clear "Before" and "After" comparison
- Explain WHY the change is necessary
- Use code blocks with appropriate language syntax highlighting

Format your response in markdown with clear sections.

Example format for fixes:
### 🐛 Bug Found: [Issue Name]
**Problem**: [Explain the issue]
**Risk Level**: 🔴 Critical / 🟡 Medium / 🟢 Low

**Current Code:**
```
// Problematic code here
```

**Fixed Code:**
```
// Corrected code here
```

**Explanation**: [Why this fix is necessary]

Be constructive, specific, and always provide actionable solutions."""

_SUMMARY_SYSTEM_PROMPT = """You are a senior code reviewer providing a comprehensive PR summary.

Provide a detailed analysis including:
- Assessment of all changes
- Security analysis
- Performance impact assessment
- Specific recommendations
- Risk assessment for each component
- Testing recommendations"""


def build_system_prompt(preferences: AuthorPreferences) -> str:
    """System prompt: reviewer persona, language, and author preferences."""
    instruction = _LANGUAGE_INSTRUCTIONS.get(preferences.language, _LANGUAGE_INSTRUCTIONS["en"])
    prompt = f"You are an expert code reviewer. {instruction}\n\n{_REVIEW_INSTRUCTIONS}"
    if preferences.detail_level == "high":
        prompt += "\n\nGo into depth: cover edge cases and explain the reasoning for each finding."
    if not preferences.include_code_examples:
        prompt += "\n\nDescribe fixes in prose; do not include code examples."
    if preferences.focus_areas:
        prompt += "\n\nAuthor focus areas: " + ", ".join(preferences.focus_areas)
    return prompt


class ReviewEngine:
    """Reviews diffs with an LLM, honouring repository and author policy."""

    def __init__(
        self,
        client: AsyncOpenAI,
        policy: PolicyLookup,
        *,
        model: str = DEFAULT_MODEL,
        max_completion_tokens: int = 32000,
        summary_max_tokens: int = 16000,
        max_diff_chars: int = 200_000,
        max_retries: int = 3,
        retry_base_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.policy = policy
        self.model = model
        self.max_completion_tokens = max_completion_tokens
        self.summary_max_tokens = summary_max_tokens
        self.max_diff_chars = max_diff_chars
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep

    # ------------------------------------------------------------------
    #  Public API
    # ------------------------------------------------------------------

    async def review(
        self,
        diff_text: str,
        path: str,
        context_message: str,
        author: str,
        *,
        guidance: str = "",
    ) -> str:
        """Review one file's diff block and return markdown text.

        Args:
            diff_text: The file's full diff block.
            path: File path, for the prompt.
            context_message: Commit message or PR title.
            author: Author identity; selects language and detail preferences.
            guidance: Repository review guidance (categories, focus areas).

        Raises:
            LLMRateLimitError: Still rate limited after all retries.
            LLMTimeoutError: The request timed out.
            LLMError: Any other API failure or an empty response.
        """
        preferences = self.policy.get_author_preferences(author)

        truncated = diff_text
        if len(diff_text) > self.max_diff_chars:
            truncated = diff_text[: self.max_diff_chars] + "\n... (truncated for length)"
            logger.warning(
                "Diff truncated for file %s",
                path,
                extra={"original_size": len(diff_text), "truncated_size": self.max_diff_chars},
            )

        user_prompt = f"File: {path}\nCommit Message: {context_message}\n\n"
        if guidance:
            user_prompt += f"{guidance}\n"
        user_prompt += f"Code Diff:\n```diff\n{truncated}\n```\n\nPlease review this code change."

        return await self._complete(
            [
                {"role": "system", "content": build_system_prompt(preferences)},
                {"role": "user", "content": user_prompt},
            ],
            self.max_completion_tokens,
        )

    async def summarize_pull_request(
        self,
        title: str,
        description: str,
        results: Sequence[ReviewResult],
        author: str,
    ) -> str:
        """Overall assessment of a PR, given the per-file reviews."""
        preferences = self.policy.get_author_preferences(author)
        instruction = _LANGUAGE_INSTRUCTIONS.get(preferences.language, _LANGUAGE_INSTRUCTIONS["en"])
        reviewed = "\n".join(f"- {r.path}" for r in results if r.ok) or "- (none)"
        user_prompt = (
            f"Pull Request: {title}\n"
            f"Description: {description or 'No description provided'}\n\n"
            "Individual file reviews have been completed. Please provide:\n"
            "1. An overall assessment of the PR\n"
            "2. Key points that need attention\n"
            "3. Overall code quality rating (1-10)\n"
            "4. Approval recommendation (Approve/Request Changes/Comment)\n\n"
            f"Number of files changed: {len(results)}\n"
            f"Files reviewed:\n{reviewed}"
        )
        return await self._complete(
            [
                {"role": "system", "content": f"{_SUMMARY_SYSTEM_PROMPT}\n\n{instruction}"},
                {"role": "user", "content": user_prompt},
            ],
            self.summary_max_tokens,
        )

    # ------------------------------------------------------------------
    #  Retry loop
    # ------------------------------------------------------------------

    async def _complete(self, messages: list[dict[str, str]], max_tokens: int) -> str:
        attempt = 0
        while True:
            try:
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    max_completion_tokens=max_tokens,
                )
            except openai.RateLimitError as exc:
                if attempt >= self.max_retries:
                    logger.error(
                        "LLM still rate limited after %d retries", self.max_retries
                    )
                    raise LLMRateLimitError(str(exc)) from exc
                delay = self.retry_base_delay * 2**attempt
                attempt += 1
                logger.warning(
                    "LLM rate limited — retry %d/%d in %.1fs",
                    attempt,
                    self.max_retries,
                    delay,
                )
                await self._sleep(delay)
                continue
            except openai.APITimeoutError as exc:
                raise LLMTimeoutError("LLM request timed out") from exc
            except openai.APIError as exc:
                raise LLMError(f"Failed to review code: {exc}") from exc

            content = response.choices[0].message.content if response.choices else None
            if not content:
                raise LLMError("LLM returned an empty response")
            return content
