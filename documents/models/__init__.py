from .quotation import AdvancePayment, PaymentMethod, Quotation, QuotationLine, Rejection
from .reservation import Reservation, ReservationExtension, ReservationLine
from .requirement import Requirement, RequirementLine
from .sales import Sale, SaleLine
from .purchase import PurchaseOrder, PurchaseOrderLine
