import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
UPLOADS_DIR = os.getenv("UPLOADS_DIR", os.path.join(BASE_DIR, 'uploads'))
RESULTS_DIR = os.getenv("RESULTS_DIR", os.path.join(BASE_DIR, 'static', 'results'))
SESSION_DIR = os.getenv("SESSION_DIR", os.path.join(BASE_DIR, 'flask_session'))

os.makedirs(UPLOADS_DIR, exist_ok=True)
os.makedirs(RESULTS_DIR, exist_ok=True)

VISION_MODEL_ID = os.getenv("VISION_MODEL_ID", 'meta-llama/llama-4-scout-17b-16e-instruct')
TEXT_MODEL_ID = os.getenv("TEXT_MODEL_ID", 'qwen/qwen3-32b')
LLM_TEMPERATURE = 0.1
LLM_MAX_TOKENS = 2048

ALLOWED_IMAGE_TYPES = {'image/png', 'image/jpeg', 'image/jpg', 'image/webp', 'image/gif'}

# Palmer Notation
TOOTH_NAMES = {
    # Permanent
    "1": "中切牙", "2": "侧切牙", "3": "尖牙", "4": "第一前磨牙",
    "5": "第二前磨牙", "6": "第一磨牙", "7": "第二磨牙", "8": "第三磨牙",
    # Primary (letters)
    "A": "乳中切牙", "B": "乳侧切牙", "C": "乳尖牙", "D": "第一乳磨牙", "E": "第二乳磨牙",
    # Primary (ASCII Roman)
    "I": "乳中切牙", "II": "乳侧切牙", "III": "乳尖牙", "IV": "第一乳磨牙", "V": "第二乳磨牙",
    # Primary (Unicode Roman)
    "Ⅰ": "乳中切牙", "Ⅱ": "乳侧切牙", "Ⅲ": "乳尖牙", "Ⅳ": "第一乳磨牙", "Ⅴ": "第二乳磨牙",
}

TOOTH_ORDINAL = {
    "1": 1, "2": 2, "3": 3, "4": 4, "5": 5, "6": 6, "7": 7, "8": 8,
    "A": 1, "B": 2, "C": 3, "D": 4, "E": 5,
    "I": 1, "II": 2, "III": 3, "IV": 4, "V": 5,
    "Ⅰ": 1, "Ⅱ": 2, "Ⅲ": 3, "Ⅳ": 4, "Ⅴ": 5,
}
UNKNOWN_RANK = 99 # Unmapped symbols sort after every real tooth
UNKNOWN_TOOTH_NAME = "未知牙位"
UNKNOWN_AREA_LABEL = "未知区域"

TOOTH_SEPARATOR = "、"
CLAUSE_SEPARATOR = "，"

# Chart canvas
CANVAS_WIDTH = 600
CANVAS_HEIGHT = 400
CANVAS_BACKGROUND = '#ffffff'
CHART_COLOR = '#000000'
FONT_SIZE = 64
FONT_PATH = os.getenv("CHART_FONT_PATH")
FONT_CANDIDATES = [
    'Times New Roman.ttf', 'times.ttf', 'LiberationSerif-Regular.ttf',
    'DejaVuSerif.ttf', 'NotoSerif-Regular.ttf',
]
PADDING = 15          # Gap between axis and text
LINE_OVERHANG = 15    # Line extension beyond the text
DEFAULT_RAY = 100     # Ray length of a completely empty chart
VERTICAL_RAY = FONT_SIZE + PADDING
TEXT_NUDGE = 5        # Pulls text back toward the horizontal axis
LINE_WIDTH = 4

EXPORT_NAME_LIMIT = 50
EMPTY_CHART_NAME = "空牙位图"

HISTORY_LIMIT = 100

IMAGE_ANALYSIS_PROMPT = """
你是一名精通帕尔默牙位标记法（Palmer Notation Method）的专家级牙科助手。
请分析提供的牙科图表记录图像。图片中可能包含**一个或多个**牙位记录。

**任务目标：**
1. 找出图像中所有的数字、字母或符号。
   - **恒牙**：阿拉伯数字 1-8。
   - **乳牙**：英文字母 A-E 或 **罗马数字 I-V (Ⅰ-Ⅴ)**。
2. 针对**每一个**找到的标记，单独判断其所属的象限。
3. **检测边框线完整性**：特别注意是否缺少水平线。

**判定原则（基于字符与线条的相对位置）：**
- 字符位于竖线**左侧** -> 患者的**右侧象限** (UR 或 LR)。
- 字符位于竖线**右侧** -> 患者的**左侧象限** (UL 或 LL)。
- 字符位于横线**上方** -> **上颌** (UR 或 UL)。
- 字符位于横线**下方** -> **下颌** (LR 或 LL)。

**特殊规则：缺失水平线**
- 如果图像中只有竖线，没有明显的横线：将 missingHorizontalLine 设为 true，
  并默认将这些牙位归类为**上颌** (UR 或 UL)。用户将在界面上进行手动确认。

只输出 JSON，格式如下：
{
  "findings": [{"toothNumber": "6", "quadrant": "右上区 (A区 - UR)", "description": "右上第一磨牙"}],
  "combinedDescription": "右上第一磨牙",
  "missingHorizontalLine": false,
  "confidence": "高",
  "reasoning": "..."
}
quadrant 只能取以下值之一："右上区 (A区 - UR)"、"左上区 (B区 - UL)"、"右下区 (C区 - LR)"、"左下区 (D区 - LL)"、"未知"。
如果识别到罗马数字，请直接输出罗马数字字符（如 Ⅴ），不要转换为字母或数字。
"""

CHART_PARSE_PROMPT = """
将以下牙位描述转换为帕尔默记录法（Palmer Notation）的四个象限数据。
请提取每个象限对应的牙位编号（数字1-8或字母A-E或罗马数字I-V）。

规则：
- UR (Upper Right) = 右上区
- UL (Upper Left) = 左上区
- LR (Lower Right) = 右下区
- LL (Lower Left) = 左下区
- 如果描述中没有提及某个象限，该字段留空字符串。
- 输出仅包含标记符号，不要包含中文。

只返回 JSON: {"UR": "", "UL": "", "LR": "", "LL": ""}
"""
