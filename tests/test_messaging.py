from unittest.mock import MagicMock, patch

import pytest
import requests

from educafric import notification_templates as templates
from educafric.errors import MessagingError, ProviderNotConfigured
from educafric.messaging import MessagingService, PushService, clean_phone, mask_phone, notify_user
from educafric.models import ROLE_PARENT, DeviceToken


def vonage_ok(uuid='uuid-1'):
    response = MagicMock(content=b'{}')
    response.json.return_value = {'message_uuid': uuid}
    return response


@pytest.mark.parametrize('phone, expected', [
    ('677 12 34 56', '237677123456'),
    ('+237 677-12-34-56', '237677123456'),
    ('0033612345678', '0033612345678'),
    (None, ''),
])
def test_clean_phone(phone, expected):
    assert clean_phone(phone) == expected


def test_mask_phone():
    assert mask_phone('+237677123456') == '***3456'
    assert mask_phone('12') == '***'


def test_send_sms_payload(app):
    service = MessagingService()
    with patch('educafric.messaging.requests.post', return_value=vonage_ok()) as post:
        result = service.send_sms('677123456', 'Bonjour')

    assert result == {'success': True, 'messageId': 'uuid-1', 'channel': 'sms', 'to': '237677123456'}
    assert post.call_args.args[0] == 'https://api.nexmo.com/v1/messages'
    assert post.call_args.kwargs['json'] == {'from': 'EDUCAFRIC', 'to': '237677123456', 'message_type': 'text',
                                             'text': 'Bonjour', 'channel': 'sms'}
    assert post.call_args.kwargs['auth'] == ('vonage-key', 'vonage-secret')


def test_whatsapp_uses_whatsapp_sender(app):
    with patch('educafric.messaging.requests.post', return_value=vonage_ok()) as post:
        MessagingService(whatsapp_from='237600000000').send('677123456', 'Bonjour', channel='whatsapp')
    assert post.call_args.kwargs['json']['from'] == '237600000000'
    assert post.call_args.kwargs['json']['channel'] == 'whatsapp'


def test_unconfigured_service(app):
    service = MessagingService(api_key='', api_secret='')
    assert service.health()['missingVars'] == ['VONAGE_API_KEY', 'VONAGE_API_SECRET']
    with pytest.raises(ProviderNotConfigured):
        service.send_sms('677123456', 'Bonjour')


def test_http_errors_become_messaging_errors(app):
    response = MagicMock()
    response.raise_for_status.side_effect = requests.HTTPError('401 Unauthorized')
    with patch('educafric.messaging.requests.post', return_value=response):
        with pytest.raises(MessagingError):
            MessagingService().send_sms('677123456', 'Bonjour')


def test_notify_user_reports_failures(app, make_user, school):
    parent = make_user(ROLE_PARENT, school, preferred_language='en')
    with patch('educafric.messaging.requests.post', side_effect=requests.Timeout('slow')):
        result = notify_user(parent, 'subscription_expired')
    assert result['success'] is False
    assert result['user_id'] == parent.id

    parent.phone = None
    assert notify_user(parent, 'subscription_expired')['error'] == 'No phone number'


def test_notify_user_renders_in_user_language(app, make_user, school):
    parent = make_user(ROLE_PARENT, school)
    with patch('educafric.messaging.requests.post', return_value=vonage_ok()) as post:
        result = notify_user(parent, 'subscription_reminder', days=3)
    assert result['success'] is True
    assert post.call_args.kwargs['json']['text'].startswith('Votre abonnement EDUCAFRIC expire dans 3 jours')


def test_templates():
    assert templates.format_xaf(1250000) == '1 250 000 FCFA'
    assert templates.format_xaf(None) == '0 FCFA'
    # Unknown languages fall back to French
    assert templates.render('bus_unenrollment', 'de', student_name='Emma', school_name='LBY').startswith(
        'Votre enfant Emma')


def test_push_without_devices(app, make_user, school):
    user = make_user(ROLE_PARENT, school)
    with patch('educafric.messaging.requests.post') as post:
        assert PushService().send_push([user.id], 'Titre', 'Corps') == {'success': 0, 'failure': 0, 'sent': False}
    post.assert_not_called()


def test_push_to_registered_devices(app, db, make_user, school):
    user = make_user(ROLE_PARENT, school)
    db.session.add(DeviceToken(user_id=user.id, token='fcm-token-1', platform='android'))
    db.session.commit()

    response = MagicMock()
    response.json.return_value = {'success': 1, 'failure': 0}
    with patch('educafric.messaging.requests.post', return_value=response) as post:
        result = PushService().send_push([user.id], 'Bulletin', 'Disponible', data={'bulletinId': '3'})

    assert result == {'success': 1, 'failure': 0, 'sent': True}
    assert post.call_args.kwargs['json']['registration_ids'] == ['fcm-token-1']
    assert post.call_args.kwargs['headers']['Authorization'] == 'key=fcm-key'
