"""
WebGraph-Explorer モデル側の設定
Bedrock 呼び出しに関する設定項目をここで管理します
"""

AWS_REGION = "us-west-2"
BEDROCK_MODEL_ID = "us.anthropic.claude-3-7-sonnet-20250219-v1:0"

MAX_TOKENS = 8192
TEMPERATURE = 0.5

# ターン全体を何回まで試行するか（初回を含む）
RETRY_ATTEMPT_COUNT = 3
RETRY_DELAY_SECONDS = 15  # 秒

# 一時的なエラーとして再試行対象にするエラーコード
RETRYABLE_ERROR_CODES = {
    "ThrottlingException",
    "ServiceUnavailableException",
    "InternalServerException",
    "ModelStreamErrorException",
    "ModelTimeoutException",
    "ModelNotReadyException",
}
