"""解读器 / 执行器接口与默认实现

编排器在 WRITE 阶段调用 Interpreter，在 ACT 阶段调用 Executor。
生产环境注入真实适配器，测试注入测试替身；默认实现不产生任何外部副作用。
"""

from typing import Protocol

from pydantic import BaseModel, Field
from vaultloop.core.approval_criteria import approval_reasons
from vaultloop.core.models import Plan, Task


class Interpretation(BaseModel):
    """任务解读结果"""

    summary: str = Field(description="写入任务文档的解读摘要")
    steps: list[str] = Field(default_factory=list, description="建议步骤，为空时使用默认步骤")


class ExecutionResult(BaseModel):
    """执行结果"""

    success: bool
    detail: str = ""
    step_outcomes: dict[int, str] = Field(default_factory=dict, description="步骤编号 -> 结果")


class Interpreter(Protocol):
    """任务解读接口"""

    async def interpret(self, task: Task) -> Interpretation:
        ...


class Executor(Protocol):
    """外部动作执行接口

    只需返回成功/失败；系统保证对"决定执行"的记录恰好一次，
    不保证外部动作本身恰好执行一次。
    """

    async def execute(self, task: Task, plan: Plan) -> ExecutionResult:
        ...


class KeywordInterpreter:
    """默认解读器 -- 基于敏感词给出摘要，步骤留空交给默认步骤"""

    async def interpret(self, task: Task) -> Interpretation:
        reasons = approval_reasons(task.title, task.body) or ["flagged at intake"]
        lines = [f"Task \"{task.title}\" received from {task.source}."]
        if task.requires_approval:
            lines.append("Human approval required: " + "; ".join(reasons) + ".")
        else:
            lines.append("No sensitive content detected; no approval required.")
        return Interpretation(summary="\n".join(lines))


class EchoExecutor:
    """默认执行器 -- 不做任何外部动作，直接报告成功"""

    async def execute(self, task: Task, plan: Plan) -> ExecutionResult:
        return ExecutionResult(
            success=True,
            detail=f"Echo: {task.title}",
            step_outcomes={step.number: "echoed" for step in plan.steps},
        )
