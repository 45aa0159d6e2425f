from .number_series import NumberSeries
from .exchange_rate import Currency, ExchangeRate
