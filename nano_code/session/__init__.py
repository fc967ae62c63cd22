"""Session engine"""
from .status import SessionStatus, StatusInfo
from .processor import StreamProcessor, ProcessResult, retryable, retry_delay
from .compaction import SessionCompaction, is_overflow, estimate_tokens
from .system import SystemPrompt
from .instruction import InstructionLoader
from .summary import summarize
from .title import SessionTitle
from .prompt import SessionPrompt, to_model_messages
