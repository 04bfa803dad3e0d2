"""
命题提示词模板

按题型、难度组织命题约束，生成发送给模型的 system / user 提示词。
模板只描述格式与规范，教材内容由调用方截取后填入。
"""

from typing import Dict, Optional

TEXTBOOK_NAME = "《第5届HR搏学考试辅导教材》"

SYSTEM_PROMPT = "你是专业的HR考试命题专家，请根据教材内容生成高质量的考试题目，严格按照JSON格式返回。"


# ============================================================================
# 难度与题型定义
# ============================================================================

DIFFICULTY_DESCRIPTIONS = {
    "易": "全员了解/全员熟悉级别，适合判断题、单选题",
    "中": "HR掌握级别，适合单选题、多选题",
    "难": "全员掌握级别，适合单选题、多选题",
}

QUESTION_TYPE_RULES: Dict[str, Dict[str, str]] = {
    "单选题": {
        "description": "单选题，必须严格设置4个选项（A、B、C、D），仅1个正确答案",
        "option_format": "选项必须严格按照A、B、C、D的格式编排，选项后均不加句号。禁止设置2个或3个选项！",
        "answer_format": "正确答案必须是单个字母：A、B、C或D（不允许其他格式）",
        "answer_example": "A",
    },
    "多选题": {
        "description": "多选题，必须严格设置4个选项（A、B、C、D），正确答案通常为2-3个",
        "option_format": "选项必须严格按照A、B、C、D的格式编排，选项后均不加句号。禁止设置2个或3个选项！",
        "answer_format": "正确答案必须是多个字母组合：如AB、ABC、ACD等（不含空格和分隔符，不允许单个字母）",
        "answer_example": "AB",
    },
    "判断题": {
        "description": "判断题，必须严格设置2个选项，禁止设置4个选项！",
        "option_format": "选项必须严格为：A. 正确  B. 错误，选项后均不加句号。禁止设置A、B、C、D四个选项！",
        "answer_format": "正确答案必须是：A（表示正确）或B（表示错误），不允许其他格式",
        "answer_example": "A",
    },
}


# ============================================================================
# 命题规范（题干 / 选项 / 解析）
# ============================================================================

_PRINCIPLES = """📋 命题六大原则：
1. 不超纲：所有考点须来自指定教材，禁止引用教材外内容，禁止主观臆测
2. 能力导向：紧扣能力点，考察对关键知识的理解与应用
3. 分级一致：题目难度与知识点等级匹配
4. 结构规范：题干、选项、解析均需符合统一格式要求
5. 语言严谨：术语准确、表达规范、无语病歧义
6. 解析完整：每题需提供三段式解析"""

_STEM_RULES = """🎯 题干撰写规范：
• 使用陈述句，不得使用问句、反问句、感叹句
• 以句号结尾，句号后加"（ ）"，括号之间保留空格
• 避免使用"可能""一定程度上""或许""部分情况""不一定不是"等模糊判断或双重否定结构
• 严禁使用企业"黑话"或自造词，术语与教材保持一致
• 聚焦单一考点，建议控制在40字以内
• 优先采用业务真实情境：【主体】+【背景情境】+【行为事件】+【考察要素】
✅ 示例：某区域HRBP在推动组织调整时，发现部分岗位长期空缺但仍保留编制。根据编制管理原则，应优先采取的方式是。（ ）"""

_OPTION_RULES = """🎯 选项撰写规范：
• 结构一致、语义互斥、干扰有效、单选题正确项唯一
• 选项控制在12-20字以内，表意独立完整
• 正确项位置不固定；数字、时间、等级类选项按升序排列
• 选项后均不加句号"""

_ANALYSIS_RULES = f"""🎯 三段式解析：
【教材原文段】以"教材原文："开头，注明"根据{TEXTBOOK_NAME}第X页"，只引用与考点相关的原句
【试题分析段】以"试题分析："开头，解释正确项与各干扰项的易错点
【答案结论段】单选题：【本题答案为 X】；多选题：【本题答案为 X、Y】；判断题：【本题答案为 正确】或【本题答案为 错误】
• 解析总长度控制在900字以内"""

_SCORE_RULES = """🎯 质量评分（0-100分）：90分以上完全符合规范；80-89分存在1-2个小问题；70-79分存在格式或内容问题；60-69分勉强合格；60分以下不合格"""


def build_user_prompt(
    material_context: str,
    question_type: str,
    difficulty: str,
    knowledge_point: Optional[str] = None,
) -> str:
    rules = QUESTION_TYPE_RULES[question_type]
    knowledge_line = f"• 知识点：{knowledge_point}\n" if knowledge_point else ""
    return f"""你是专业的HR考试命题专家，请严格按照{TEXTBOOK_NAME}和HR搏学命题规范生成高质量试题。

🚨 重要约束：
1. 只能基于下方提供的教材内容进行命题，严禁使用教材外信息
2. 题干、选项、解析必须直接来源于教材内容，教材原文引用必须是下方内容中的真实原句
3. 单选题4个选项答案单个字母；多选题4个选项答案多个字母；判断题2个选项答案A或B

📚 教材内容（命题唯一依据）：
{material_context}

{_PRINCIPLES}

📋 基本命题要求：
• 题型：{rules["description"]}
• 难度：{DIFFICULTY_DESCRIPTIONS.get(difficulty, DIFFICULTY_DESCRIPTIONS["中"])}
{knowledge_line}• 选项格式：{rules["option_format"]}
• 答案格式：{rules["answer_format"]}

{_STEM_RULES}

{_OPTION_RULES}

{_ANALYSIS_RULES}

{_SCORE_RULES}

📝 请严格按照以下JSON格式返回：
{{
  "stem": "完整的陈述句，以句号结尾，后加（ ）",
  "options": ["A选项内容", "B选项内容", "C选项内容", "D选项内容"],
  "correct_answer": "{rules["answer_example"]}",
  "analysis": {{
    "textbook": "教材原文：根据{TEXTBOOK_NAME}第X页，[引用教材原句]",
    "explanation": "试题分析：[解释正确答案与干扰项]",
    "conclusion": "【本题答案为 X】"
  }},
  "quality_score": 90
}}
"""
