"""
试题规范性评分

依据 HR 搏学命题规范对单道试题做规则检查，从 100 分起按问题严重程度扣分：

    题干：high 15 / medium 8 / low 3
    选项：high 12 / medium 6 / low 2
    解析：high 10 / medium 5 / low 2

通过条件：分数不低于 review.pass_score（默认 70）且没有 high 级别问题。
"""

from dataclasses import dataclass
from typing import Any, Dict, List

from core.config import cfg
from core.review_metadata import ReviewResult

SEVERITY_HIGH = "high"
SEVERITY_MEDIUM = "medium"
SEVERITY_LOW = "low"

ISSUE_ERROR = "error"
ISSUE_WARNING = "warning"

STEM_PENALTY = {SEVERITY_HIGH: 15, SEVERITY_MEDIUM: 8, SEVERITY_LOW: 3}
OPTION_PENALTY = {SEVERITY_HIGH: 12, SEVERITY_MEDIUM: 6, SEVERITY_LOW: 2}
ANALYSIS_PENALTY = {SEVERITY_HIGH: 10, SEVERITY_MEDIUM: 5, SEVERITY_LOW: 2}

STEM_SUFFIX = "。（ ）"
VAGUE_PHRASES = ["可能", "一定程度上", "或许", "部分情况", "不一定不是", "某种程度", "基本上", "大概", "似乎"]
DOUBLE_NEGATIVES = ["不是不", "不能不", "不会不", "不应该不"]
JARGON_PHRASES = ["打通", "赋能", "抓手", "闭环", "沉淀", "输出", "拉齐", "对齐", "复盘"]
WEAK_DISTRACTOR_WORDS = ["错误", "不对", "无关"]
TEXTBOOK_KEYWORDS = ["第5届HR搏学考试辅导教材", "搏学考试辅导教材"]


@dataclass
class ReviewIssue:
    type: str
    category: str
    description: str
    severity: str

    def render(self) -> str:
        return f"[{self.category}] {self.description}"


def _pass_score() -> int:
    try:
        return max(0, min(100, int(cfg.get("review.pass_score", 70) or 70)))
    except (TypeError, ValueError):
        return 70


def _issue(kind: str, category: str, description: str, severity: str) -> ReviewIssue:
    return ReviewIssue(type=kind, category=category, description=description, severity=severity)


def check_stem(question: Dict[str, Any]) -> List[ReviewIssue]:
    issues: List[ReviewIssue] = []
    stem = str(question.get("stem") or "").strip()
    if not stem:
        return [_issue(ISSUE_ERROR, "题干规范", "题干不能为空", SEVERITY_HIGH)]

    if not stem.endswith(STEM_SUFFIX):
        issues.append(_issue(ISSUE_ERROR, "题干格式", '题干必须使用陈述句，以"。（ ）"结尾，不能使用问句', SEVERITY_HIGH))
    if "？" in stem or "?" in stem:
        issues.append(_issue(ISSUE_ERROR, "题干句式", "题干不得使用问句、反问句、感叹句，必须使用陈述句", SEVERITY_HIGH))
    if len(stem) < 15:
        issues.append(_issue(ISSUE_WARNING, "题干内容", "题干内容过短，建议完善描述", SEVERITY_MEDIUM))
    if len(stem) > 120:
        issues.append(_issue(ISSUE_WARNING, "题干内容", "题干过长，建议控制在40字以内，聚焦单一考点", SEVERITY_MEDIUM))

    for phrase in VAGUE_PHRASES:
        if phrase in stem:
            issues.append(_issue(ISSUE_WARNING, "语言表达", f'避免使用模糊表达"{phrase}"，表达需明确无歧义', SEVERITY_MEDIUM))
    if any(x in stem for x in DOUBLE_NEGATIVES):
        issues.append(_issue(ISSUE_WARNING, "语言表达", "避免使用双重否定结构，避免含混逻辑", SEVERITY_MEDIUM))
    for phrase in JARGON_PHRASES:
        if phrase in stem:
            issues.append(_issue(ISSUE_WARNING, "术语规范", f'避免使用企业黑话"{phrase}"，应使用教材标准术语', SEVERITY_MEDIUM))

    has_scenario = "某" in stem and ("HRBP" in stem or "负责人" in stem or "管理者" in stem)
    if len(stem) > 30 and not has_scenario and "以下" not in stem and "下列" not in stem:
        issues.append(_issue(ISSUE_WARNING, "场景化表达", "建议采用业务真实情境或描述性表达，增强实用性", SEVERITY_LOW))
    return issues


def check_options(question: Dict[str, Any]) -> List[ReviewIssue]:
    issues: List[ReviewIssue] = []
    options = question.get("options")
    if not isinstance(options, dict) or not options:
        return [_issue(ISSUE_ERROR, "选项结构", "选项格式错误", SEVERITY_HIGH)]

    question_type = question.get("question_type")
    keys = list(options.keys())
    values = [str(v or "") for v in options.values()]

    if question_type == "判断题" and len(keys) != 2:
        issues.append(_issue(ISSUE_ERROR, "选项数量", "判断题应有2个选项", SEVERITY_HIGH))
    elif question_type in ("单选题", "多选题") and len(keys) != 4:
        issues.append(_issue(ISSUE_ERROR, "选项数量", "选择题应有4个选项", SEVERITY_HIGH))

    for key, text in zip(keys, values):
        if len(text) < 2:
            issues.append(_issue(ISSUE_WARNING, "选项内容", f"选项{key}内容过短", SEVERITY_LOW))
        if len(text) > 60:
            issues.append(_issue(ISSUE_WARNING, "选项内容", f"选项{key}过长，建议控制在12-20字", SEVERITY_MEDIUM))

    avg = sum(len(v) for v in values) / len(values)
    if any(abs(len(v) - avg) > avg * 0.5 for v in values):
        issues.append(_issue(
            ISSUE_WARNING,
            "选项结构",
            "选项长度差异较大，违反结构一致性标准，建议保持语法结构、表达方式、信息密度一致",
            SEVERITY_MEDIUM,
        ))

    for i in range(len(values)):
        for j in range(i + 1, len(values)):
            a = values[i].lower()
            b = values[j].lower()
            if a in b or b in a:
                issues.append(_issue(
                    ISSUE_WARNING,
                    "选项语义",
                    f"选项{keys[i]}和{keys[j]}存在包含关系，违反语义互斥性标准",
                    SEVERITY_MEDIUM,
                ))

    if any(any(w in v for w in WEAK_DISTRACTOR_WORDS) or len(v) < 3 for v in values):
        issues.append(_issue(ISSUE_WARNING, "干扰有效性", "存在明显错误的选项，干扰项应贴近实际业务但具有误导性", SEVERITY_MEDIUM))

    for key, text in zip(keys, values):
        if text.endswith("。") or text.endswith("."):
            issues.append(_issue(ISSUE_WARNING, "选项格式", f"选项{key}不应以句号结尾", SEVERITY_LOW))

    answer = str(question.get("correct_answer") or "").strip()
    if not answer:
        issues.append(_issue(ISSUE_ERROR, "正确答案", "缺少正确答案", SEVERITY_HIGH))
        return issues
    if question_type == "单选题" and len(answer) > 1:
        issues.append(_issue(ISSUE_ERROR, "正确答案", "单选题必须只有一个正确答案", SEVERITY_HIGH))
    if question_type == "多选题" and not 2 <= len(answer) <= 3:
        issues.append(_issue(ISSUE_WARNING, "正确答案", "多选题正确答案通常为2-3个", SEVERITY_LOW))
    invalid = [c for c in answer if c not in keys]
    if invalid:
        issues.append(_issue(ISSUE_ERROR, "正确答案", f"正确答案包含无效选项：{', '.join(invalid)}", SEVERITY_HIGH))
    return issues


def expected_conclusion(question_type: str, answer: str) -> str:
    if question_type == "多选题":
        return f"【本题答案为 {'、'.join(answer)}】"
    if question_type == "判断题":
        return f"【本题答案为 {'正确' if answer == 'A' else '错误'}】"
    return f"【本题答案为 {answer}】"


def check_analysis(question: Dict[str, Any]) -> List[ReviewIssue]:
    issues: List[ReviewIssue] = []
    analysis = question.get("analysis")
    if not isinstance(analysis, dict) or not analysis:
        return [_issue(ISSUE_ERROR, "解析结构", "解析格式错误", SEVERITY_HIGH)]

    labels = {"textbook": "教材原文", "explanation": "试题分析", "conclusion": "答案结论"}
    for field, label in labels.items():
        value = analysis.get(field)
        if not isinstance(value, str) or not value.strip():
            issues.append(_issue(ISSUE_ERROR, "解析完整性", f"缺少{label}段", SEVERITY_HIGH))

    textbook = str(analysis.get("textbook") or "").strip()
    if textbook:
        if not any(x in textbook for x in TEXTBOOK_KEYWORDS):
            issues.append(_issue(ISSUE_ERROR, "教材引用", "教材原文段必须明确引用《第5届HR搏学考试辅导教材》", SEVERITY_HIGH))
        if "页" not in textbook:
            issues.append(_issue(ISSUE_ERROR, "教材引用", '教材原文段必须注明页码，格式如"第X页"', SEVERITY_HIGH))
        if not textbook.startswith("教材原文："):
            issues.append(_issue(ISSUE_WARNING, "教材引用", '教材原文段应以"教材原文："开头', SEVERITY_MEDIUM))
        if len(textbook) < 20:
            issues.append(_issue(ISSUE_WARNING, "教材引用", "教材原文段内容过短，应精准引用相关原句/段落", SEVERITY_MEDIUM))

    explanation = str(analysis.get("explanation") or "").strip()
    if explanation:
        if not explanation.startswith("试题分析："):
            issues.append(_issue(ISSUE_WARNING, "试题分析", '试题分析段应以"试题分析："开头', SEVERITY_MEDIUM))
        if "正确" not in explanation and "错误" not in explanation:
            issues.append(_issue(ISSUE_WARNING, "试题分析", "试题分析应清晰解释正确答案理由和其他选项错误之处", SEVERITY_MEDIUM))

    conclusion = str(analysis.get("conclusion") or "").strip()
    if conclusion:
        expected = expected_conclusion(question.get("question_type"), str(question.get("correct_answer") or ""))
        if expected not in conclusion:
            issues.append(_issue(ISSUE_ERROR, "答案结论", f'答案结论段格式不规范，应为"{expected}"', SEVERITY_HIGH))

    total = sum(len(str(analysis.get(k) or "")) for k in labels)
    if total > 900:
        issues.append(_issue(ISSUE_WARNING, "解析长度", "解析总长度超过900字，建议精简内容", SEVERITY_MEDIUM))
    if total < 50:
        issues.append(_issue(ISSUE_WARNING, "解析长度", "解析内容过短，建议完善三段式解析", SEVERITY_MEDIUM))
    return issues


def build_suggestions(issues: List[ReviewIssue]) -> List[str]:
    errors = {i.category for i in issues if i.type == ISSUE_ERROR}
    warnings = {i.category for i in issues if i.type == ISSUE_WARNING}
    suggestions: List[str] = []
    if "题干格式" in errors:
        suggestions.append("请检查题干格式，确保符合规范要求的句式结构和标点符号")
    if "选项数量" in errors or "选项结构" in errors:
        suggestions.append("请检查选项设置，确保数量正确且结构规范")
    if "解析完整性" in errors:
        suggestions.append("请完善解析内容，确保包含教材原文、试题分析、答案结论三个部分")
    if "语言表达" in warnings:
        suggestions.append("建议优化语言表达，避免使用模糊词汇和双重否定")
    if "选项内容" in warnings:
        suggestions.append("建议调整选项长度，保持12-20字的合理范围")
    if "教材引用" in warnings:
        suggestions.append("建议完善教材引用，明确标注教材名称和页码")
    return suggestions


def _penalty(issues: List[ReviewIssue], table: Dict[str, int]) -> int:
    return sum(table.get(i.severity, 0) for i in issues)


def score_question(question: Dict[str, Any]) -> ReviewResult:
    stem_issues = check_stem(question)
    option_issues = check_options(question)
    analysis_issues = check_analysis(question)

    score = 100
    score -= _penalty(stem_issues, STEM_PENALTY)
    score -= _penalty(option_issues, OPTION_PENALTY)
    score -= _penalty(analysis_issues, ANALYSIS_PENALTY)
    score = max(0, min(100, score))

    issues = stem_issues + option_issues + analysis_issues
    passed = score >= _pass_score() and not any(i.severity == SEVERITY_HIGH for i in issues)
    return ReviewResult(
        score=score,
        passed=passed,
        issues=[i.render() for i in issues],
        suggestions=build_suggestions(issues),
    )
