# cloudfleet/services/exceptions.py

# --- Validation Exceptions ---
class ValidationError(Exception):
    """요청 값이 유효하지 않을 때 (재시도하지 않음)"""
    pass

# --- Not Found Exceptions ---
class NotFoundError(Exception):
    """엔티티를 찾을 수 없을 때"""
    pass

class ProjectNotFoundError(NotFoundError):
    """프로젝트를 찾을 수 없을 때"""
    pass

class TaskNotFoundError(NotFoundError):
    """태스크를 찾을 수 없을 때"""
    pass

class InstanceNotFoundError(NotFoundError):
    """인스턴스를 찾을 수 없을 때"""
    pass

class UserNotFoundError(NotFoundError):
    """사용자를 찾을 수 없을 때"""
    pass

class SSHKeyNotFoundError(NotFoundError):
    """SSH 키를 찾을 수 없을 때"""
    pass

# --- Permission Exceptions ---
class PermissionDeniedError(Exception):
    """관리자 전용 기능을 일반 사용자가 요청했을 때"""
    pass

# --- Conflict Exceptions ---
class ConflictError(Exception):
    """이름 중복, 허용되지 않는 상태 전이 등 현재 상태와 충돌할 때"""
    pass

class ProjectNotEmptyError(ConflictError):
    """종료되지 않은 인스턴스가 있는 프로젝트를 삭제하려고 할 때"""
    pass

class InvalidStatusTransitionError(ConflictError):
    """허용되지 않은 상태 전이를 요청했을 때"""
    pass

# --- Server / Configuration Exceptions ---
class ServerError(Exception):
    """예상하지 못한 내부 오류"""
    pass

class ConfigurationError(Exception):
    """프로바이더 등 필수 설정이 누락되었을 때 (어댑터 생성 시점에 발생)"""
    pass

# --- Provider Exceptions ---
class ProviderError(Exception):
    """
    프로바이더 호출 실패.
    retryable이 True이면 일시적 오류(네트워크, 레이트 리밋, 타임아웃)로 재시도 대상입니다.
    """
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable

class ProviderNotFoundError(ProviderError):
    """프로바이더 쪽 리소스가 존재하지 않을 때"""
    def __init__(self, message: str):
        super().__init__(message, retryable=False)

class ProviderAuthError(ProviderError):
    """프로바이더 인증 실패 (치명적, 재시도하지 않음)"""
    def __init__(self, message: str):
        super().__init__(message, retryable=False)

class ProviderTimeoutError(ProviderError):
    """호출 기한 초과 (일시적 오류로 취급)"""
    def __init__(self, message: str):
        super().__init__(message, retryable=True)

class ProvisioningError(ProviderError):
    """하이퍼바이저/네트워크 선택 등 프로비저닝 구성 오류 (재시도하지 않음)"""
    def __init__(self, message: str):
        super().__init__(message, retryable=False)

# --- Payload Exceptions ---
class PayloadDeploymentError(Exception):
    """SSH를 통한 페이로드 복사/실행 실패"""
    pass
