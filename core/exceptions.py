"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理。

每個異常都帶有一個 ErrorKind，呼叫端依 kind 分流（例如轉成 HTTP status），
而不是依異常的結構去猜。沒有 kind 的異常一律視為內部錯誤。
"""
import enum


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    CAPACITY_EXHAUSTED = "CAPACITY_EXHAUSTED"
    FORBIDDEN = "FORBIDDEN"


class CheckinCoreException(Exception):
    """所有核心業務異常的基類"""
    kind: ErrorKind = ErrorKind.CONFLICT
    code: str | None = None

    def __init__(self, message: str = "", **details):
        self.message = message or self.__class__.__doc__ or self.__class__.__name__
        self.details = details
        super().__init__(self.message)


class NotFound(CheckinCoreException):
    """資源不存在"""
    kind = ErrorKind.NOT_FOUND


class Conflict(CheckinCoreException):
    """與目前狀態衝突"""
    kind = ErrorKind.CONFLICT


class PreconditionFailed(CheckinCoreException):
    """前置條件未滿足"""
    kind = ErrorKind.PRECONDITION_FAILED


class CapacityExhausted(CheckinCoreException):
    """沒有可分配的資源（呼叫端應改走候補名單）"""
    kind = ErrorKind.CAPACITY_EXHAUSTED


class Forbidden(CheckinCoreException):
    """操作者沒有權限"""
    kind = ErrorKind.FORBIDDEN


# ============ Not Found ============

class LaneSessionNotFound(NotFound):
    def __init__(self, lane_or_session_id):
        self.lane_or_session_id = lane_or_session_id
        super().__init__(f"Lane session not found: {lane_or_session_id}")


class CustomerNotFound(NotFound):
    def __init__(self, customer_id):
        self.customer_id = customer_id
        super().__init__(f"Customer {customer_id} not found")


class ResourceNotFound(NotFound):
    def __init__(self, resource_type, resource_id):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type.capitalize()} {resource_id} not found")


class VisitNotFound(NotFound):
    def __init__(self, visit_id):
        self.visit_id = visit_id
        super().__init__(f"Visit {visit_id} not found")


class PaymentIntentNotFound(NotFound):
    def __init__(self, payment_intent_id):
        self.payment_intent_id = payment_intent_id
        super().__init__(f"Payment intent {payment_intent_id} not found")


class OccupancyNotFound(NotFound):
    def __init__(self, occupancy_id):
        self.occupancy_id = occupancy_id
        super().__init__(f"Active occupancy {occupancy_id} not found")


class CheckoutRequestNotFound(NotFound):
    def __init__(self, request_id):
        self.request_id = request_id
        super().__init__(f"Checkout request {request_id} not found")


class KeyTagNotFound(NotFound):
    """Key tag 不存在或已停用"""
    pass


class WaitlistEntryNotFound(NotFound):
    def __init__(self, entry_id):
        self.entry_id = entry_id
        super().__init__(f"Waitlist entry {entry_id} not found")


# ============ Conflict ============

class InvalidStateTransition(Conflict):
    """非法的狀態轉換"""
    pass


class LaneBusy(Conflict):
    """Lane 上已經有進行中的 session"""
    pass


class AlreadyCheckedIn(Conflict):
    """客戶目前已在場內（需指定 visit 才能續住）"""
    code = "ALREADY_CHECKED_IN"


class ResourceUnavailable(Conflict):
    """資源不是 CLEAN 或已被佔用"""
    pass


class SelectionLocked(Conflict):
    """租借類型已鎖定，不能再提議"""
    pass


class PaymentAlreadyCollected(Conflict):
    """付款已完成，不能再建立新的付款意圖"""
    pass


class DuplicateCheckoutRequest(Conflict):
    """同一個 occupancy 已有進行中的退房請求"""
    pass


class ClaimHeldByOther(Conflict):
    """退房請求已被其他員工認領且尚未過期"""
    pass


class MembershipNumberTaken(Conflict):
    """會員號碼已屬於其他客戶"""
    pass


# ============ Precondition Failed ============

class SelectionNotConfirmed(PreconditionFailed):
    """租借類型尚未確認"""
    pass


class NoSelectionProposed(PreconditionFailed):
    """尚未提議任何租借類型"""
    pass


class RentalNotAllowed(PreconditionFailed):
    """此客戶不能租這種類型"""
    pass


class PaymentNotPaid(PreconditionFailed):
    """付款尚未完成（必須是 PAID）"""
    pass


class NoCustomerOnSession(PreconditionFailed):
    """Lane session 上沒有客戶"""
    pass


class NoMembershipIntent(PreconditionFailed):
    """Session 上沒有待處理的會員購買意圖"""
    pass


class ItemsNotConfirmed(PreconditionFailed):
    """退房物品尚未確認"""
    pass


class LateFeeUnpaid(PreconditionFailed):
    """逾時費尚未付清"""
    pass


class MissingCustomerIdentity(PreconditionFailed):
    """需要 customer id、會員卡掃描值或姓名其中之一"""
    pass


class VisitAlreadyEnded(PreconditionFailed):
    """Visit 已經結束，不能續住"""
    pass


class ConfirmationRequiresCounterpart(PreconditionFailed):
    """提議與確認必須來自不同的一方（客戶提議、員工確認，或反過來）"""
    pass


class NoPaymentIntent(PreconditionFailed):
    """Session 上沒有付款意圖"""
    pass


# ============ Forbidden ============

class CustomerBanned(Forbidden):
    """客戶目前被停權"""
    pass


class PastDueBlocked(Forbidden):
    """客戶有未付清的欠款，必須先處理"""
    pass


class NotClaimOwner(Forbidden):
    """操作者不是退房請求的認領者"""
    pass


class VisitOwnershipMismatch(Forbidden):
    """Visit 不屬於此客戶"""
    pass
