import json
import os
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from core.config import cfg
from core.events import E, log_event
from core.log import get_logger
from core.prompt_templates import (
    QUESTION_TYPE_RULES,
    SYSTEM_PROMPT,
    TEXTBOOK_NAME,
    build_user_prompt,
)

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.moonshot.cn/v1"
DEFAULT_MODEL = "kimi-k2-0711-preview"
DEFAULT_TIMEOUT_SECONDS = 180

MATERIAL_CONTEXT_LIMIT = 2500

QUESTION_TYPE_SINGLE = "单选题"
QUESTION_TYPE_MULTIPLE = "多选题"
QUESTION_TYPE_TRUE_FALSE = "判断题"
QUESTION_TYPES = (QUESTION_TYPE_SINGLE, QUESTION_TYPE_MULTIPLE, QUESTION_TYPE_TRUE_FALSE)

QUESTION_TYPE_ALIASES = {
    "single-choice": QUESTION_TYPE_SINGLE,
    "single_choice": QUESTION_TYPE_SINGLE,
    "single": QUESTION_TYPE_SINGLE,
    QUESTION_TYPE_SINGLE: QUESTION_TYPE_SINGLE,
    "multi-choice": QUESTION_TYPE_MULTIPLE,
    "multiple-choice": QUESTION_TYPE_MULTIPLE,
    "multi_choice": QUESTION_TYPE_MULTIPLE,
    "multiple_choice": QUESTION_TYPE_MULTIPLE,
    QUESTION_TYPE_MULTIPLE: QUESTION_TYPE_MULTIPLE,
    "true-false": QUESTION_TYPE_TRUE_FALSE,
    "true_false": QUESTION_TYPE_TRUE_FALSE,
    "judge": QUESTION_TYPE_TRUE_FALSE,
    QUESTION_TYPE_TRUE_FALSE: QUESTION_TYPE_TRUE_FALSE,
}

DIFFICULTY_MAP = {
    "easy": "易",
    "medium": "中",
    "hard": "难",
    "简单": "易",
    "中等": "中",
    "困难": "难",
    "易": "易",
    "中": "中",
    "难": "难",
}
DEFAULT_DIFFICULTY = "中"

EXPECTED_OPTION_COUNTS = {
    QUESTION_TYPE_SINGLE: 4,
    QUESTION_TYPE_MULTIPLE: 4,
    QUESTION_TYPE_TRUE_FALSE: 2,
}
EXPECTED_ANSWER_PATTERNS = {
    QUESTION_TYPE_SINGLE: re.compile(r"^[A-D]$"),
    QUESTION_TYPE_MULTIPLE: re.compile(r"^[A-D]{2,4}$"),
    QUESTION_TYPE_TRUE_FALSE: re.compile(r"^[AB]$"),
}
OPTION_LABELS = ["A", "B", "C", "D", "E"]

KEY_TERMS = [
    "定义", "概念", "原则", "方法", "步骤", "要求", "标准", "规范", "流程", "制度",
    "政策", "管理", "人力资源", "HR", "组织", "绩效", "薪酬", "培训", "招聘", "考核",
]


class GenerationServiceError(Exception):
    pass


def map_difficulty(value: Any) -> str:
    """客户端难度标签映射为 易/中/难，无法识别时取 中。"""
    key = str(value or "").strip()
    return DIFFICULTY_MAP.get(key.lower(), DIFFICULTY_MAP.get(key, DEFAULT_DIFFICULTY))


def normalize_question_type(value: Any) -> Optional[str]:
    key = str(value or "").strip()
    return QUESTION_TYPE_ALIASES.get(key.lower(), QUESTION_TYPE_ALIASES.get(key))


def normalize_question_types(values: Sequence[Any]) -> List[str]:
    """规范化题型列表，出现未知题型时抛出 GenerationServiceError。"""
    result: List[str] = []
    for value in values or []:
        normalized = normalize_question_type(value)
        if not normalized:
            raise GenerationServiceError(f"不支持的题型: {value}")
        result.append(normalized)
    return result


def _mask_key(value: str) -> str:
    text = str(value or "").strip()
    if len(text) <= 8:
        return "*" * len(text)
    return f"{text[:4]}{'*' * (len(text) - 8)}{text[-4:]}"


def provider_config(include_secret: bool = False) -> Dict[str, Any]:
    base_url = str(
        cfg.get("ai.provider.base_url", "")
        or os.getenv("AI_PROVIDER_BASE_URL", "")
        or DEFAULT_BASE_URL
    ).strip() or DEFAULT_BASE_URL
    model_name = str(
        cfg.get("ai.provider.model_name", "")
        or os.getenv("AI_PROVIDER_MODEL_NAME", "")
        or DEFAULT_MODEL
    ).strip() or DEFAULT_MODEL
    api_key = str(
        cfg.get("ai.provider.api_key", "")
        or os.getenv("AI_PROVIDER_API_KEY", "")
        or ""
    ).strip()
    try:
        temperature = int(
            cfg.get("ai.provider.temperature", None)
            or os.getenv("AI_PROVIDER_TEMPERATURE", 70)
            or 70
        )
    except (TypeError, ValueError):
        temperature = 70
    temperature = max(0, min(100, temperature))
    try:
        timeout = int(cfg.get("ai.provider.timeout", DEFAULT_TIMEOUT_SECONDS) or DEFAULT_TIMEOUT_SECONDS)
    except (TypeError, ValueError):
        timeout = DEFAULT_TIMEOUT_SECONDS
    return {
        "provider_name": "openai-compatible",
        "base_url": base_url,
        "model_name": model_name,
        "api_key": api_key if include_secret else _mask_key(api_key),
        "temperature": temperature,
        "timeout": max(5, timeout),
        "mock": _is_mock_provider(base_url, api_key),
    }


def _is_mock_provider(base_url: str, api_key: str) -> bool:
    return base_url.lower().startswith("mock://") or api_key.lower() in ["mock", "mock-key", "test-mock"]


# ─── 教材内容截取 ─────────────────────────────────────────────────────────────

def extract_material_context(content: str, limit: int = MATERIAL_CONTEXT_LIMIT) -> str:
    """超长教材按关键词密度挑选句段，保证上下文不超过 limit。"""
    text = str(content or "")
    if len(text) <= limit:
        return text

    fragments = [p for p in re.split(r"[。！？\n]+", text) if len(p.strip()) > 10]
    scored = [(sum(p.count(term) for term in KEY_TERMS), p) for p in fragments]
    # sorted 是稳定排序，同分段落保持原文顺序
    scored = sorted(scored, key=lambda item: item[0], reverse=True)

    selected = ""
    used = 0
    for _, fragment in scored:
        if used + len(fragment) > limit:
            break
        selected += fragment + "。"
        used += len(fragment)

    if len(selected) < limit * 0.8:
        remaining = limit - len(selected)
        selected = text[:remaining] + "\n\n" + selected

    if len(selected) > limit:
        return selected[:limit] + "..."
    return selected


def build_generation_prompt(
    content: str,
    question_type: str,
    difficulty: str,
    knowledge_point: Optional[str] = None,
) -> Tuple[str, str]:
    return SYSTEM_PROMPT, build_user_prompt(
        material_context=extract_material_context(content),
        question_type=question_type,
        difficulty=map_difficulty(difficulty),
        knowledge_point=knowledge_point,
    )


# ─── 模型调用 ─────────────────────────────────────────────────────────────────

_MOCK_QUESTIONS = {
    QUESTION_TYPE_SINGLE: {
        "stem": "某区域HRBP在推动组织调整时，发现部分岗位长期空缺但仍保留编制，根据编制管理原则应优先采取的方式是。（ ）",
        "options": ["立即撤销全部空缺岗位编制", "按编制管理原则重新评估岗位需求", "保持现有编制数量维持不变", "将空缺编制调剂给其他部门"],
        "correct_answer": "B",
    },
    QUESTION_TYPE_MULTIPLE: {
        "stem": "以下关于现代企业人力资源管理体系核心模块的描述，哪些是正确的。（ ）",
        "options": ["人力资源规划与需求预测", "招聘选拔与人才配置管理", "办公用品采购与库存盘点", "绩效管理与激励机制设计"],
        "correct_answer": "ABD",
    },
    QUESTION_TYPE_TRUE_FALSE: {
        "stem": "绩效管理的主要目的在于帮助员工持续改进工作表现。（ ）",
        "options": ["正确", "错误"],
        "correct_answer": "A",
    },
}


def _mock_conclusion(question_type: str, answer: str) -> str:
    if question_type == QUESTION_TYPE_TRUE_FALSE:
        return f"【本题答案为 {'正确' if answer == 'A' else '错误'}】"
    if question_type == QUESTION_TYPE_MULTIPLE:
        return f"【本题答案为 {'、'.join(answer)}】"
    return f"【本题答案为 {answer}】"


def _mock_completion(user_prompt: str) -> str:
    m = re.search(r"题型：(单选题|多选题|判断题)", user_prompt or "")
    question_type = m.group(1) if m else QUESTION_TYPE_SINGLE
    template = _MOCK_QUESTIONS[question_type]
    payload = {
        "stem": template["stem"],
        "options": template["options"],
        "correct_answer": template["correct_answer"],
        "analysis": {
            "textbook": f"教材原文：根据{TEXTBOOK_NAME}第15页，人力资源管理是运用现代管理方法，对人力资源的获取、开发、保持和利用进行计划、组织、指挥和控制的活动。",
            "explanation": "试题分析：正确选项体现了教材中关于人力资源管理职能的表述，其余选项与教材原文不符，属于常见的错误理解。",
            "conclusion": _mock_conclusion(question_type, template["correct_answer"]),
        },
        "quality_score": 88,
    }
    return "以下为模拟生成结果：\n" + json.dumps(payload, ensure_ascii=False)


def call_openai_compatible(system_prompt: str, user_prompt: str) -> str:
    runtime = provider_config(include_secret=True)
    base_url = runtime["base_url"]
    api_key = runtime["api_key"]

    if runtime["mock"]:
        return _mock_completion(user_prompt)
    if not api_key:
        raise GenerationServiceError("AI 服务未配置，请设置 ai.provider.api_key")

    endpoint = f"{base_url.rstrip('/')}/chat/completions"
    payload = {
        "model": runtime["model_name"],
        "temperature": float(runtime["temperature"]) / 100.0,
        "max_tokens": 2000,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
    }
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json; charset=utf-8",
    }
    log_event(logger, E.AI_GENERATE_CALL, level="debug", model=runtime["model_name"])
    try:
        # 显式序列化 JSON，确保中文不被转义
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        resp = requests.post(endpoint, data=body, headers=headers, timeout=runtime["timeout"])
    except requests.RequestException as e:
        raise GenerationServiceError(f"模型调用异常: {e}")
    if resp.status_code >= 400:
        raise GenerationServiceError(f"模型调用失败: {resp.text[:300]}")
    try:
        data = resp.json()
    except ValueError:
        raise GenerationServiceError("模型返回格式错误")
    choices = data.get("choices") or []
    if not choices:
        raise GenerationServiceError("模型返回为空")
    return str(choices[0].get("message", {}).get("content", "") or "").strip()


# ─── 响应解析 ─────────────────────────────────────────────────────────────────

def _normalize_options(raw: Any) -> Dict[str, str]:
    if isinstance(raw, list):
        return {OPTION_LABELS[i]: str(v) for i, v in enumerate(raw[: len(OPTION_LABELS)])}
    if isinstance(raw, dict):
        return {str(k).strip().upper(): str(v) for k, v in raw.items()}
    return {}


def _fix_option_count(question_type: str, options: Dict[str, str]) -> Dict[str, str]:
    expected = EXPECTED_OPTION_COUNTS[question_type]
    if len(options) == expected:
        return options
    logger.warning("题型选项数量不符: %s 期望 %s 实际 %s", question_type, expected, len(options))
    if question_type == QUESTION_TYPE_TRUE_FALSE and len(options) > 2:
        return {"A": "正确", "B": "错误"}
    if question_type != QUESTION_TYPE_TRUE_FALSE and len(options) < 4:
        return {label: options.get(label) or f"选项{label}" for label in OPTION_LABELS[:4]}
    return options


def _fix_answer(question_type: str, answer: str) -> str:
    if EXPECTED_ANSWER_PATTERNS[question_type].match(answer):
        return answer
    logger.warning("答案格式不符: %s 实际答案 %s", question_type, answer)
    if question_type == QUESTION_TYPE_TRUE_FALSE:
        return "A" if ("正确" in answer or "A" in answer) else "B"
    letters = re.findall(r"[A-D]", answer)
    if question_type == QUESTION_TYPE_SINGLE:
        return letters[0] if letters else "A"
    if len(set(letters)) >= 2:
        return "".join(sorted(set(letters)))
    return "AB"


def _fix_true_false_options(options: Dict[str, str]) -> Dict[str, str]:
    if not (options.get("A") and options.get("B")):
        return options
    fixed = dict(options)
    option_a = fixed["A"].lower()
    option_b = fixed["B"].lower()
    if "正确" not in option_a and "对" not in option_a and "true" not in option_a:
        fixed["A"] = "正确"
    if "错误" not in option_b and "错" not in option_b and "false" not in option_b:
        fixed["B"] = "错误"
    return fixed


def _normalize_quality_score(value: Any) -> float:
    try:
        score = float(value if value is not None else 80)
    except (TypeError, ValueError):
        score = 80.0
    if score > 1:
        score = score / 100.0
    return max(0.0, min(1.0, score))


def parse_generated_question(text: str, question_type: str) -> Dict[str, Any]:
    """从模型输出中提取试题 JSON 并按题型修正选项与答案格式。"""
    content = str(text or "").strip()
    if not content:
        raise GenerationServiceError("AI响应为空")
    m = re.search(r"\{[\s\S]*\}", content)
    if not m:
        raise GenerationServiceError("无法找到JSON格式响应")
    try:
        parsed = json.loads(m.group(0))
    except ValueError as e:
        raise GenerationServiceError(f"AI响应解析失败: {e}")
    if not isinstance(parsed, dict):
        raise GenerationServiceError("AI响应解析失败: 结构错误")
    if not parsed.get("stem") or not parsed.get("options") or not parsed.get("correct_answer"):
        raise GenerationServiceError("响应缺少必需字段")

    options = _fix_option_count(question_type, _normalize_options(parsed.get("options")))
    answer = _fix_answer(question_type, str(parsed.get("correct_answer") or "").strip().upper())
    if question_type == QUESTION_TYPE_TRUE_FALSE:
        options = _fix_true_false_options(options)

    analysis = parsed.get("analysis") if isinstance(parsed.get("analysis"), dict) else {}
    return {
        "stem": str(parsed.get("stem")).strip(),
        "options": options,
        "correct_answer": answer,
        "analysis": {
            "textbook": str(analysis.get("textbook") or ""),
            "explanation": str(analysis.get("explanation") or ""),
            "conclusion": str(analysis.get("conclusion") or ""),
        },
        "quality_score": _normalize_quality_score(parsed.get("quality_score")),
    }


def _min_content_length() -> int:
    try:
        return max(0, int(cfg.get("generation.min_content_length", 100) or 100))
    except (TypeError, ValueError):
        return 100


def generate_question(
    content: str,
    question_type: str,
    difficulty: str,
    knowledge_point: Optional[str] = None,
) -> Dict[str, Any]:
    """调用一次模型生成单道试题，任何失败都以 GenerationServiceError 抛出。"""
    if question_type not in QUESTION_TYPE_RULES:
        raise GenerationServiceError(f"不支持的题型: {question_type}")
    if len(str(content or "").strip()) < _min_content_length():
        raise GenerationServiceError(f"教材内容不足，无法生成试题（至少{_min_content_length()}字符）")
    system_prompt, user_prompt = build_generation_prompt(content, question_type, difficulty, knowledge_point)
    text = call_openai_compatible(system_prompt, user_prompt)
    return parse_generated_question(text, question_type)
