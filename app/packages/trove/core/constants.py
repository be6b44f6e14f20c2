"""常量定义：HTTP 状态码、上传状态与存储相关的固定取值。"""

from fastapi import status

HTTP_STATUS_OK = status.HTTP_200_OK
HTTP_STATUS_CREATED = status.HTTP_201_CREATED
HTTP_STATUS_NO_CONTENT = status.HTTP_204_NO_CONTENT
HTTP_STATUS_SEE_OTHER = status.HTTP_303_SEE_OTHER
HTTP_STATUS_BAD_REQUEST = status.HTTP_400_BAD_REQUEST
HTTP_STATUS_UNAUTHORIZED = status.HTTP_401_UNAUTHORIZED
HTTP_STATUS_FORBIDDEN = status.HTTP_403_FORBIDDEN
HTTP_STATUS_NOT_FOUND = status.HTTP_404_NOT_FOUND
HTTP_STATUS_CONFLICT = status.HTTP_409_CONFLICT
HTTP_STATUS_REQUEST_ENTITY_TOO_LARGE = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
HTTP_STATUS_CLIENT_CLOSED_REQUEST = 499
HTTP_STATUS_INTERNAL_SERVER_ERROR = status.HTTP_500_INTERNAL_SERVER_ERROR
HTTP_STATUS_SERVICE_UNAVAILABLE = status.HTTP_503_SERVICE_UNAVAILABLE
HTTP_STATUS_INSUFFICIENT_STORAGE = status.HTTP_507_INSUFFICIENT_STORAGE

ACCESS_TOKEN_TYPE = "bearer"
SESSION_COOKIE_NAME = "trove_session"

# 上传记录状态
UPLOAD_STATUS_PENDING = "pending"
UPLOAD_STATUS_UPLOADING = "uploading"
UPLOAD_STATUS_COMPLETED = "completed"
UPLOAD_STATUS_FAILED = "failed"

# 空内容的 SHA-256
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

# 暂存文件前缀，启动清理时按此前缀识别
SPOOL_PREFIX = "trove-upload-"

# 与对象存储分片大小对齐的拷贝缓冲区
DEFAULT_COPY_BUFFER_SIZE = 8 * 1024 * 1024

MAX_FILENAME_LENGTH = 255
ROOT_FOLDER = "/"

# 回收站清理时每批处理的用户数
RETENTION_USER_BATCH_SIZE = 100
