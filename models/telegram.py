import html
import logging
from datetime import datetime

import requests

logger = logging.getLogger(__name__)

BASE_URL = "https://api.telegram.org"
STORE_NAME = "سنتر المستودع للساعات والعطور"
CURRENCY = "د.ع"

ORDER_STATUS_AR = {
      'pending': 'في الانتظار',
      'confirmed': 'مؤكد',
      'shipped': 'تم الشحن',
      'delivered': 'تم التوصيل',
      'cancelled': 'ملغي',
}


class TelegramError(Exception):
      pass


class TelegramService:
      def __init__(self, bot_token=None, chat_id=None, base_url=BASE_URL, timeout=10, store_name=STORE_NAME):
            self.bot_token = bot_token or ''
            self.chat_id = chat_id or ''
            self.base_url = base_url
            self.timeout = timeout
            self.store_name = store_name
            if not self.configured:
                  logger.info('Telegram bot not configured - missing TELEGRAM_BOT_TOKEN or TELEGRAM_CHAT_ID')

      @property
      def configured(self):
            return bool(self.bot_token and self.chat_id)

      def _api_url(self, method):
            return f"{self.base_url}/bot{self.bot_token}/{method}"

      def _send_message(self, text, parse_mode='HTML'):
            """
            إرسال رسالة إلى محادثة الإدارة

            :param text: نص الرسالة
            :param parse_mode: HTML أو Markdown
            :return: نتيجة Telegram API
            """
            payload = {
                  "chat_id": self.chat_id,
                  "text": text,
            }
            if parse_mode:
                  payload["parse_mode"] = parse_mode

            response = requests.post(self._api_url("sendMessage"), json=payload, timeout=self.timeout)
            try:
                  data = response.json()
            except ValueError:
                  raise TelegramError(f"Telegram API returned a non-JSON response ({response.status_code})")

            if not data.get('ok', False):
                  raise TelegramError(f"Telegram API Error: {data.get('description', 'Unknown error')}")
            return data.get('result', {})

      def format_order_message(self, order):
            created_at = order.get('createdAt')
            if isinstance(created_at, datetime):
                  order_date = created_at.strftime('%Y-%m-%d %I:%M %p')
            elif created_at:
                  order_date = str(created_at)
            else:
                  order_date = datetime.now().strftime('%Y-%m-%d %I:%M %p')

            items_lines = []
            for item in order.get('items') or []:
                  name = item.get('nameAr') or item.get('name') or ''
                  items_lines.append(
                        f"• {html.escape(name)} - الكمية: {item.get('quantity')} - السعر: {item.get('price')} {CURRENCY}"
                  )

            status = order.get('status') or 'pending'
            lines = [
                  f"🔔 <b>طلب جديد - {html.escape(self.store_name)}</b>",
                  "",
                  f"📋 <b>رقم الطلب:</b> #{order.get('id')}",
                  f"👤 <b>اسم العميل:</b> {html.escape(order.get('customerName') or '')}",
                  f"📱 <b>رقم الهاتف:</b> {html.escape(order.get('customerPhone') or '')}",
            ]
            if order.get('customerEmail'):
                  lines.append(f"📧 <b>البريد الإلكتروني:</b> {html.escape(order['customerEmail'])}")
            lines.extend([
                  f"📍 <b>عنوان التوصيل:</b> {html.escape(order.get('shippingAddress') or '')}",
                  f"🏙️ <b>المدينة:</b> {html.escape(order.get('city') or '')}",
                  "",
                  "📦 <b>المنتجات:</b>",
                  "\n".join(items_lines),
                  "",
                  f"💰 <b>إجمالي المبلغ:</b> {order.get('totalAmount')} {CURRENCY}",
                  f"📅 <b>تاريخ الطلب:</b> {order_date}",
                  f"📊 <b>حالة الطلب:</b> {ORDER_STATUS_AR.get(status, status)}",
                  "",
                  "⚡ يرجى معالجة هذا الطلب في أقرب وقت ممكن.",
            ])
            return "\n".join(lines).strip()

      def format_cancellation_message(self, info):
            return "\n".join([
                  f"❌ <b>تم إلغاء طلب - {html.escape(self.store_name)}</b>",
                  "",
                  f"📋 <b>رقم الطلب:</b> #{info.get('orderId')}",
                  f"👤 <b>اسم العميل:</b> {html.escape(info.get('customerName') or '')}",
                  f"📱 <b>رقم الهاتف:</b> {html.escape(info.get('customerPhone') or '')}",
                  f"💸 <b>المبلغ المخصوم من الإيرادات:</b> {info.get('totalAmount')} {CURRENCY}",
                  f"🛡️ <b>تم الإلغاء بواسطة:</b> {html.escape(info.get('cancelledBy') or 'Admin')}",
            ])

      def send_order_notification(self, order):
            if not self.configured:
                  logger.info('Telegram bot not configured - skipping notification')
                  return False
            try:
                  self._send_message(self.format_order_message(order))
                  logger.info(f"Order notification sent to Telegram for order #{order.get('id')}")
                  return True
            except (requests.exceptions.RequestException, TelegramError) as e:
                  logger.error(f"Failed to send Telegram notification: {str(e)}")
                  return False

      def send_cancellation_notification(self, info):
            if not self.configured:
                  logger.info('Telegram bot not configured - skipping cancellation notification')
                  return False
            try:
                  self._send_message(self.format_cancellation_message(info))
                  logger.info(f"Cancellation notification sent to Telegram for order #{info.get('orderId')}")
                  return True
            except (requests.exceptions.RequestException, TelegramError) as e:
                  logger.error(f"Failed to send Telegram cancellation notification: {str(e)}")
                  return False

      def send_test_message(self):
            if not self.configured:
                  raise TelegramError('Telegram bot not configured')
            try:
                  self._send_message(f"✅ تم تفعيل بوت إشعارات {self.store_name} بنجاح!", parse_mode=None)
            except requests.exceptions.RequestException as e:
                  raise TelegramError(f"Request failed: {str(e)}") from e
            return True

      def test_connection(self):
            if not self.bot_token:
                  return False
            try:
                  response = requests.get(self._api_url("getMe"), timeout=self.timeout)
                  return bool(response.json().get('ok', False))
            except (requests.exceptions.RequestException, ValueError) as e:
                  logger.error(f"Error testing Telegram connection: {str(e)}")
                  return False
