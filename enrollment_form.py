"""Client-side logic of the front-desk enrollment form.

Talks to the JSON API over `requests`. Timers are injected (threading.Timer
by default) so the phone lookup debounce and dropdown blur delay can be driven
by hand in tests.
"""
import io
import logging
import re
import threading
import time
import unicodedata
import uuid

import requests
from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

PHONE_DEBOUNCE_SECONDS = 2.0
DROPDOWN_BLUR_DELAY = 0.15
MAX_IMAGES = 3
MAX_IMAGE_BYTES = int(0.4 * 1024 * 1024)
MAX_IMAGE_SIDE = 1024

PHONE_PATTERN = re.compile(r'^0\d{9}$')


def compact_phone(phone):
    return re.sub(r'\s', '', phone or '')


def validate_vietnam_phone(phone):
    """Exactly 10 digits starting with 0; whitespace is ignored"""
    return bool(PHONE_PATTERN.match(compact_phone(phone)))


def normalize(text):
    """Search key: no diacritics, no punctuation, lower case"""
    if not text:
        return ''
    text = unicodedata.normalize('NFD', text)
    text = ''.join(ch for ch in text if not unicodedata.combining(ch))
    text = text.replace('đ', 'd').replace('Đ', 'd')
    text = re.sub(r'[^\w\s]', '', text, flags=re.ASCII)
    return text.lower().strip()


def compress_image(data, max_bytes=MAX_IMAGE_BYTES, max_side=MAX_IMAGE_SIDE):
    """Re-encode an image as JPEG no larger than max_side on its longest edge"""
    with Image.open(io.BytesIO(data)) as original:
        image = ImageOps.exif_transpose(original)
        if image.mode != 'RGB':
            image = image.convert('RGB')
        image.thumbnail((max_side, max_side))

    quality = 85
    while True:
        output = io.BytesIO()
        image.save(output, format='JPEG', quality=quality, optimize=True)
        if output.tell() <= max_bytes or quality <= 25:
            return output.getvalue()
        quality -= 10


# ==================== API CLIENT ====================

class ApiClientError(Exception):
    def __init__(self, message, status=None):
        super().__init__(message)
        self.message = message
        self.status = status


class ApiClient:
    """Unwraps the {success, data, error} envelope of every endpoint"""

    def __init__(self, base_url='', session=None, timeout=10):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method, path, **kwargs):
        url = path if path.startswith(('http://', 'https://')) else self.base_url + path
        kwargs.setdefault('timeout', self.timeout)
        response = self.session.request(method, url, **kwargs)

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400 or not isinstance(body, dict) or not body.get('success'):
            error = body.get('error') if isinstance(body, dict) else None
            raise ApiClientError(error or f'Request failed with status {response.status_code}',
                                 response.status_code)
        return body.get('data')

    def get_sales_staff(self):
        return self._request('GET', '/api/users/sales')['staff']

    def get_materials(self, limit=100):
        return self._request('GET', '/api/materials', params={'limit': limit})['materials']

    def check_phone(self, phone):
        return self._request('GET', '/api/students/check-phone', params={'phone': phone})

    def borrow(self, payload):
        return self._request('POST', '/api/enrollment', json=dict(payload, type='borrow'))

    def return_material(self, phone, material_id):
        return self._request('POST', '/api/enrollment',
                             json={'type': 'return', 'phone': phone, 'material_id': material_id})

    def sign_upload(self, path):
        return self._request('POST', '/api/storage/sign-upload', json={'path': path})

    def upload_to_signed_url(self, signed_url, file_name, data, content_type='image/jpeg'):
        return self._request('PUT', signed_url, files={'file': (file_name, data, content_type)})

    def register_images(self, records):
        return self._request('POST', '/api/enrollment-images', json=records)


# ==================== PHONE LOOKUP ====================

class PhoneLookup:
    """Debounced student lookup by phone.

    Every update cancels the pending lookup. A finished lookup is only passed
    to on_result(phone, student, borrowed_materials) while its phone is still
    the current input. Results are applied while holding the
    lock that update takes.
    """

    def __init__(self, client, on_result, delay=PHONE_DEBOUNCE_SECONDS,
                 timer_factory=threading.Timer):
        self.client = client
        self.on_result = on_result
        self.delay = delay
        self.timer_factory = timer_factory
        self.current_phone = ''
        self.checking = False
        self._timer = None
        self._lock = threading.RLock()

    def update(self, phone):
        with self._lock:
            self.current_phone = phone
            self.cancel()
            self.checking = False
            schedule = bool(phone) and validate_vietnam_phone(phone)
            if schedule:
                self._timer = self.timer_factory(self.delay, self.run, args=(phone,))
                self._timer.start()
            else:
                self.on_result(phone, None, [])

    def cancel(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def run(self, phone):
        with self._lock:
            if phone != self.current_phone:
                return
            self.checking = True

        student, borrowed = None, []
        try:
            result = self.client.check_phone(compact_phone(phone)) or {}
        except (ApiClientError, requests.RequestException) as e:
            logger.warning('Phone lookup for %s failed: %s', phone, e)
        else:
            student = result.get('student')
            if student:
                borrowed = result.get('borrowed_materials') or []

        with self._lock:
            if phone != self.current_phone:
                logger.debug('Discarding stale lookup for %s', phone)
                return
            self.checking = False
            self.on_result(phone, student, borrowed)


# ==================== FORM ====================

class FormError(Exception):
    pass


class EnrollmentForm:
    """State and actions of the borrow form"""

    DROPDOWNS = ('staff', 'material')

    def __init__(self, client, timer_factory=threading.Timer, compress=compress_image,
                 lookup_delay=PHONE_DEBOUNCE_SECONDS):
        self.client = client
        self.timer_factory = timer_factory
        self.compress = compress
        self.lookup = PhoneLookup(client, self.apply_lookup, delay=lookup_delay,
                                  timer_factory=timer_factory)
        self.sales_staff = []
        self.materials = []
        self.messages = []
        self.submitted = False
        self._blur_timers = {}
        self.reset()

    def reset(self):
        self.fields = {
            'student_name': '',
            'email': '',
            'phone': '',
            'level': 'ielts',
            'purpose': 'new',
            'sales_staff_id': None,
            'sales_staff_name': '',
            'notes': '',
        }
        self.student = None
        self.borrowed_materials = []
        self.selected_types = []
        self.selected_materials = []
        self.images = []
        self.staff_search = ''
        self.material_search = ''
        self.show_staff_dropdown = False
        self.show_material_dropdown = False
        # Kept across retries of the same submission
        self.request_id = uuid.uuid4().hex

    def notify(self, level, message):
        self.messages.append((level, message))
        logger.log(logging.ERROR if level == 'error' else logging.INFO, message)

    def load(self):
        """Fetch sales staff and in-stock materials"""
        try:
            self.sales_staff = self.client.get_sales_staff()
        except (ApiClientError, requests.RequestException) as e:
            logger.error('Failed to load sales staff: %s', e)
        try:
            self.materials = [m for m in self.client.get_materials(limit=100)
                              if m['quantity_available'] > 0]
        except (ApiClientError, requests.RequestException) as e:
            logger.error('Failed to load materials: %s', e)

    @property
    def checking_phone(self):
        return self.lookup.checking

    # -------------------- phone --------------------

    def set_phone(self, phone):
        self.fields['phone'] = phone
        self.material_search = ''
        self.lookup.update(phone)

    def apply_lookup(self, phone, student, borrowed_materials):
        if not student:
            self.student = None
            self.borrowed_materials = []
            return

        self.student = student
        self.borrowed_materials = borrowed_materials
        # The stored name wins over anything typed before the lookup finished
        self.fields['student_name'] = ''
        borrowed_ids = self.borrowed_material_ids()
        self.selected_materials = [m for m in self.selected_materials if m['id'] not in borrowed_ids]

    def borrowed_material_ids(self):
        return {item['material_id'] for item in self.borrowed_materials}

    # -------------------- materials --------------------

    def toggle_type(self, material_type):
        if material_type in self.selected_types:
            self.selected_types = [t for t in self.selected_types if t != material_type]
            self.selected_materials = [m for m in self.selected_materials if m['type'] != material_type]
            if not self.selected_types:
                self.material_search = ''
        else:
            self.selected_types = self.selected_types + [material_type]

    def add_material(self, material):
        if not any(m['id'] == material['id'] for m in self.selected_materials):
            self.selected_materials.append(material)
        self.material_search = ''
        self.show_material_dropdown = False

    def remove_material(self, material_id):
        self.selected_materials = [m for m in self.selected_materials if m['id'] != material_id]

    def available_materials(self):
        """Materials of the selected types not held by the student and not already picked"""
        borrowed_ids = self.borrowed_material_ids() if self.student else set()
        selected_ids = {m['id'] for m in self.selected_materials}
        return [
            m for m in self.materials
            if (not self.selected_types or m['type'] in self.selected_types)
            and m['id'] not in borrowed_ids
            and m['id'] not in selected_ids
        ]

    def filtered_materials(self):
        materials = self.available_materials()
        if not self.material_search:
            return materials
        term = normalize(self.material_search)
        return [m for m in materials
                if term in normalize(m['title']) or term in normalize(m.get('author') or '')]

    # -------------------- staff --------------------

    def filtered_staff(self):
        if not self.staff_search:
            return self.sales_staff
        term = normalize(self.staff_search)
        return [s for s in self.sales_staff
                if term in normalize(s['full_name']) or term in normalize(s.get('email') or '')]

    def select_staff(self, staff):
        self.fields['sales_staff_id'] = staff['id']
        self.fields['sales_staff_name'] = staff['full_name']
        self.staff_search = staff['full_name']
        self.show_staff_dropdown = False

    # -------------------- dropdowns --------------------

    def focus_dropdown(self, name):
        if name not in self.DROPDOWNS:
            raise ValueError(f'Unknown dropdown: {name}')
        timer = self._blur_timers.pop(name, None)
        if timer is not None:
            timer.cancel()
        setattr(self, f'show_{name}_dropdown', True)

    def blur_dropdown(self, name):
        """Hide after a short delay so a click on an option still lands"""
        if name not in self.DROPDOWNS:
            raise ValueError(f'Unknown dropdown: {name}')
        timer = self.timer_factory(DROPDOWN_BLUR_DELAY, self._hide_dropdown, args=(name,))
        self._blur_timers[name] = timer
        timer.start()

    def _hide_dropdown(self, name):
        self._blur_timers.pop(name, None)
        setattr(self, f'show_{name}_dropdown', False)

    # -------------------- images --------------------

    def add_images(self, files):
        """Attach (file_name, bytes) pairs; returns how many were added"""
        if not files:
            return 0

        remaining = MAX_IMAGES - len(self.images)
        if remaining <= 0:
            self.notify('error', f'At most {MAX_IMAGES} images')
            return 0

        accepted = list(files)[:remaining]
        if len(accepted) < len(files):
            self.notify('error', f'Only {len(accepted)} image(s) added (max {MAX_IMAGES})')

        try:
            compressed = [{'name': name, 'data': self.compress(data)} for name, data in accepted]
        except OSError as e:
            logger.warning('Image compression failed: %s', e)
            self.notify('error', 'Could not process image')
            return 0

        self.images.extend(compressed)
        return len(compressed)

    def remove_image(self, index):
        if 0 <= index < len(self.images):
            del self.images[index]

    # -------------------- submit --------------------

    def validate(self):
        phone = self.fields['phone']
        if not phone:
            raise FormError('Please enter a phone number')
        if not validate_vietnam_phone(phone):
            raise FormError('Invalid phone number. It must have exactly 10 digits starting with 0')
        if not self.fields['student_name'] and not (self.student and self.student.get('name')):
            raise FormError('Please enter the student name')
        if not self.fields['sales_staff_id']:
            raise FormError('Please select a sales consultant')
        if not self.selected_types:
            raise FormError('Please select at least one type (book or gift)')
        if not self.selected_materials:
            raise FormError('Please select at least one material')
        if 'gift' in self.selected_types and not self.images:
            raise FormError('Please upload at least one image when a gift is included')

    def payload(self):
        return {
            # An existing student keeps the stored name
            'student_name': self.student['name'] if self.student else self.fields['student_name'],
            'email': self.fields['email'],
            'phone': compact_phone(self.fields['phone']),
            'level': self.fields['level'],
            'purpose': self.fields['purpose'],
            'sales_staff_id': self.fields['sales_staff_id'],
            'material_ids': [m['id'] for m in self.selected_materials],
            'notes': self.fields['notes'],
            'request_id': self.request_id,
        }

    def submit(self):
        """Borrow the selected materials, then upload and register the images.

        Raises FormError for invalid input and ApiClientError when the borrow
        itself fails; the form keeps its state (and request id) in both cases.
        """
        self.submitted = False
        try:
            self.validate()
        except FormError as e:
            self.notify('error', str(e))
            raise

        try:
            result = self.client.borrow(self.payload())
        except ApiClientError as e:
            self.notify('error', e.message or 'Operation failed')
            raise

        enrollment_id = result.get('enrollment_id')
        uploaded, warning = [], None
        if self.images and enrollment_id:
            uploaded, warning = self._upload_images(enrollment_id)
            if warning:
                self.notify('error', warning)

        self.notify('success', result.get('message'))
        self.reset()
        self.lookup.update('')
        self.submitted = True
        return {
            'enrollment_id': enrollment_id,
            'message': result.get('message'),
            'uploaded': uploaded,
            'warning': warning,
        }

    def _upload_images(self, enrollment_id):
        """sign -> upload -> register; failures only produce a warning"""
        records = []
        failed = 0
        for index, image in enumerate(self.images):
            safe_name = re.sub(r'[^a-zA-Z0-9.]', '_', image['name']).strip('._') or 'image.jpg'
            path = f'{enrollment_id}/{int(time.time() * 1000)}-{index}-{safe_name}'
            try:
                signed = self.client.sign_upload(path)
                self.client.upload_to_signed_url(signed['signed_url'], safe_name, image['data'])
            except (ApiClientError, requests.RequestException) as e:
                logger.warning('Upload of %s failed: %s', path, e)
                failed += 1
                continue
            records.append({
                'enrollment_id': enrollment_id,
                'storage_path': signed['path'],
                'file_name': image['name'],
                'file_size': len(image['data']),
            })

        if records:
            try:
                self.client.register_images(records)
            except (ApiClientError, requests.RequestException) as e:
                logger.warning('Registering images for enrollment %s failed: %s', enrollment_id, e)
                return [], 'Saved, but some images failed to upload'

        if failed:
            return [r['storage_path'] for r in records], 'Saved, but some images failed to upload'
        return [r['storage_path'] for r in records], None
