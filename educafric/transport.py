"""
School bus tracking: buses, routes with ordered stops, student enrollments,
live positions with arrival alerts, and map data for Leaflet clients.
"""
import logging
import math
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from .auth import current_user, ensure_same_school, login_required, roles_required, school_query
from .errors import NotFound, PermissionDenied, ValidationError, parse_int
from .extensions import db
from .grading import round2
from .messaging import notify_user
from .models import (ROLE_DIRECTOR, ROLE_PARENT, ROLE_STUDENT, Bus, BusEnrollment, BusRoute, RouteStop, User,
                     children_of, parents_of)
from .subscriptions import feature_required

logger = logging.getLogger(__name__)

transport_bp = Blueprint('transport', __name__, url_prefix='/api/transport')

EARTH_RADIUS_KM = 6371
OSM_TILE_URL = 'https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png'
OSM_ATTRIBUTION = '&copy; OpenStreetMap contributors'


def haversine_km(lat1, lon1, lat2, lon2):
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def validate_coordinates(latitude, longitude):
    try:
        latitude = float(latitude)
        longitude = float(longitude)
    except (TypeError, ValueError):
        raise ValidationError('latitude and longitude must be numbers', code='INVALID_COORDINATES')
    if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
        raise ValidationError('Coordinates out of range', code='INVALID_COORDINATES')
    return latitude, longitude


def _get_in_school(model, object_id, label):
    obj = db.session.get(model, object_id) if object_id else None
    if obj is None:
        raise NotFound(f'{label} introuvable')
    return ensure_same_school(obj)


def _notify_parents(student, template_name, **context):
    context.setdefault('school_name', student.school.name if student.school else 'EDUCAFRIC')
    return [notify_user(parent, template_name, student_name=student.full_name, **context)
            for parent in parents_of(student.id)]


@transport_bp.route('/buses', methods=['GET'])
@roles_required(ROLE_DIRECTOR)
@feature_required('transport')
def list_buses():
    buses = school_query(Bus).filter_by(is_active=True).order_by(Bus.plate_number).all()
    return jsonify({'buses': [bus.to_dict() for bus in buses]})


@transport_bp.route('/buses', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
@feature_required('transport')
def create_bus():
    data = request.get_json(silent=True) or {}
    plate_number = (data.get('plate_number') or '').strip()
    if not plate_number:
        raise ValidationError('plate_number is required')
    capacity = parse_int(data.get('capacity'), 'capacity', default=30)
    bus = Bus(school_id=current_user().school_id, plate_number=plate_number, driver_name=data.get('driver_name'),
              driver_phone=data.get('driver_phone'), capacity=capacity)
    db.session.add(bus)
    db.session.commit()
    return jsonify({'success': True, 'bus': bus.to_dict()}), 201


@transport_bp.route('/routes', methods=['GET'])
@roles_required(ROLE_DIRECTOR)
@feature_required('transport')
def list_routes():
    routes = school_query(BusRoute).filter_by(is_active=True).order_by(BusRoute.name).all()
    return jsonify({'routes': [route.to_dict() for route in routes]})


@transport_bp.route('/routes', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
@feature_required('transport')
def create_route():
    data = request.get_json(silent=True) or {}
    name = (data.get('name') or '').strip()
    stops = data.get('stops') or []
    if not name:
        raise ValidationError('Route name is required')
    if not isinstance(stops, list) or len(stops) < 2:
        raise ValidationError('A route needs at least two stops')
    if data.get('bus_id'):
        _get_in_school(Bus, data['bus_id'], 'Bus')

    route = BusRoute(school_id=current_user().school_id, bus_id=data.get('bus_id'), name=name)
    for sequence, stop in enumerate(stops, start=1):
        if not isinstance(stop, dict) or not stop.get('name'):
            raise ValidationError(f'Stop {sequence} needs a name')
        latitude, longitude = validate_coordinates(stop.get('latitude'), stop.get('longitude'))
        route.stops.append(RouteStop(name=stop['name'], latitude=latitude, longitude=longitude,
                                     sequence=stop.get('sequence', sequence),
                                     scheduled_time=stop.get('scheduled_time')))
    db.session.add(route)
    db.session.commit()
    return jsonify({'success': True, 'route': route.to_dict()}), 201


@transport_bp.route('/enrollments', methods=['GET'])
@roles_required(ROLE_DIRECTOR)
@feature_required('transport')
def list_enrollments():
    query = school_query(BusEnrollment).filter_by(is_active=True)
    if request.args.get('route_id'):
        query = query.filter_by(route_id=parse_int(request.args['route_id'], 'route_id'))
    return jsonify({'enrollments': [e.to_dict() for e in query.all()]})


@transport_bp.route('/enrollments', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
@feature_required('transport')
def enroll():
    data = request.get_json(silent=True) or {}
    student = _get_in_school(User, data.get('student_id'), 'Élève')
    if student.role != ROLE_STUDENT:
        raise ValidationError('Only students can be enrolled in the bus service')
    route = _get_in_school(BusRoute, data.get('route_id'), 'Itinéraire')
    stop = db.session.get(RouteStop, data.get('stop_id') or 0)
    if stop is None or stop.route_id != route.id:
        raise ValidationError('The stop does not belong to this route', code='INVALID_STOP')

    context = {'route_name': route.name, 'stop_name': stop.name}
    enrollment = BusEnrollment.query.filter_by(student_id=student.id, is_active=True).first()
    if enrollment and enrollment.route_id == route.id and enrollment.stop_id == stop.id:
        return jsonify({'success': True, 'enrollment': enrollment.to_dict(), 'notifications': []})

    if enrollment:
        enrollment.route_id = route.id
        enrollment.stop_id = stop.id
        template_name, status_code = 'bus_route_change', 200
    else:
        enrollment = BusEnrollment(school_id=student.school_id, student_id=student.id, route_id=route.id,
                                   stop_id=stop.id)
        db.session.add(enrollment)
        template_name, status_code = 'bus_enrollment', 201
    db.session.commit()

    notifications = _notify_parents(student, template_name, **context)
    logger.info("[TRANSPORT] %s for student %s on route %s", template_name, student.id, route.name)
    return jsonify({'success': True, 'enrollment': enrollment.to_dict(), 'notifications': notifications}), \
        status_code


@transport_bp.route('/enrollments/<int:enrollment_id>', methods=['DELETE'])
@roles_required(ROLE_DIRECTOR)
@feature_required('transport')
def unenroll(enrollment_id):
    enrollment = _get_in_school(BusEnrollment, enrollment_id, 'Inscription')
    if not enrollment.is_active:
        raise NotFound('Inscription introuvable')
    enrollment.is_active = False
    db.session.commit()
    notifications = _notify_parents(enrollment.student, 'bus_unenrollment')
    return jsonify({'success': True, 'notifications': notifications})


def _notify_arrivals(bus, latitude, longitude):
    radius_km = current_app.config['BUS_ARRIVAL_RADIUS_METERS'] / 1000
    today = datetime.utcnow().date()
    arrivals = []
    for route in BusRoute.query.filter_by(bus_id=bus.id, is_active=True).all():
        for stop in route.stops:
            if haversine_km(latitude, longitude, stop.latitude, stop.longitude) > radius_km:
                continue
            if stop.last_arrival_notified == today:
                continue
            stop.last_arrival_notified = today
            enrollments = BusEnrollment.query.filter_by(stop_id=stop.id, is_active=True).all()
            notified = 0
            for enrollment in enrollments:
                results = _notify_parents(enrollment.student, 'bus_arrival', stop_name=stop.name,
                                          plate_number=bus.plate_number)
                notified += sum(1 for r in results if r['success'])
            arrivals.append({'stop_id': stop.id, 'stop_name': stop.name, 'notified': notified})
            logger.info("[TRANSPORT] Bus %s arriving at %s, %s parents notified", bus.plate_number, stop.name,
                        notified)
    return arrivals


@transport_bp.route('/buses/<int:bus_id>/location', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
@feature_required('transport')
def update_location(bus_id):
    bus = _get_in_school(Bus, bus_id, 'Bus')
    data = request.get_json(silent=True) or {}
    latitude, longitude = validate_coordinates(data.get('latitude'), data.get('longitude'))

    bus.current_latitude = latitude
    bus.current_longitude = longitude
    bus.last_update = datetime.utcnow()
    arrivals = _notify_arrivals(bus, latitude, longitude)
    db.session.commit()
    return jsonify({'success': True, 'bus': bus.to_dict(), 'arrivals': arrivals})


def _stop_etas(stops, bus, speed_kmh):
    """Minutes from the bus position to each stop from the nearest one onwards"""
    if bus is None or bus.current_latitude is None or not stops:
        return {}
    distances = [haversine_km(bus.current_latitude, bus.current_longitude, s.latitude, s.longitude) for s in stops]
    nearest = distances.index(min(distances))

    etas = {}
    travelled = distances[nearest]
    previous = stops[nearest]
    for stop in stops[nearest:]:
        if stop is not previous:
            travelled += haversine_km(previous.latitude, previous.longitude, stop.latitude, stop.longitude)
            previous = stop
        etas[stop.id] = {'distance_km': round2(travelled), 'eta_minutes': round(travelled / speed_kmh * 60)}
    return etas


def route_map_data(route):
    stops = list(route.stops)
    bus = route.bus
    etas = _stop_etas(stops, bus, current_app.config['BUS_AVERAGE_SPEED_KMH'])
    total_km = sum(haversine_km(a.latitude, a.longitude, b.latitude, b.longitude) for a, b in zip(stops, stops[1:]))

    features = []
    for stop in stops:
        features.append({
            'type': 'Feature',
            'geometry': {'type': 'Point', 'coordinates': [stop.longitude, stop.latitude]},
            'properties': dict(stop.to_dict(), **(etas.get(stop.id) or {'distance_km': None, 'eta_minutes': None})),
        })
    features.append({
        'type': 'Feature',
        'geometry': {'type': 'LineString', 'coordinates': [[s.longitude, s.latitude] for s in stops]},
        'properties': {'route_id': route.id, 'name': route.name},
    })

    bus_position = None
    if bus is not None and bus.current_latitude is not None:
        bus_position = {'latitude': bus.current_latitude, 'longitude': bus.current_longitude,
                        'last_update': bus.last_update.isoformat() if bus.last_update else None,
                        'plate_number': bus.plate_number}
    if bus_position:
        center = [bus_position['latitude'], bus_position['longitude']]
    else:
        center = [stops[0].latitude, stops[0].longitude] if stops else None

    return {
        'route': {'id': route.id, 'name': route.name},
        'geojson': {'type': 'FeatureCollection', 'features': features},
        'bus': bus_position,
        'total_distance_km': round2(total_km),
        'center': center,
        'tiles': {'url': OSM_TILE_URL, 'attribution': OSM_ATTRIBUTION, 'max_zoom': 19},
    }


@transport_bp.route('/routes/<int:route_id>/map', methods=['GET'])
@login_required
@feature_required('transport')
def route_map(route_id):
    route = db.session.get(BusRoute, route_id)
    if route is None:
        raise NotFound('Itinéraire introuvable')
    user = current_user()
    if user.role == ROLE_PARENT:
        child_ids = [child.id for child in children_of(user.id)]
        if not BusEnrollment.query.filter(BusEnrollment.route_id == route.id, BusEnrollment.is_active.is_(True),
                                          BusEnrollment.student_id.in_(child_ids)).count():
            raise PermissionDenied("Aucun de vos enfants n'est inscrit sur cet itinéraire")
    else:
        ensure_same_school(route)
    return jsonify(route_map_data(route))


@transport_bp.route('/my-children', methods=['GET'])
@roles_required(ROLE_PARENT)
@feature_required('transport')
def my_children():
    result = []
    for child in children_of(current_user().id):
        enrollment = BusEnrollment.query.filter_by(student_id=child.id, is_active=True).first()
        entry = {'student_id': child.id, 'student_name': child.full_name, 'enrolled': enrollment is not None}
        if enrollment:
            bus = enrollment.route.bus
            entry.update({
                'route': {'id': enrollment.route.id, 'name': enrollment.route.name},
                'stop': enrollment.stop.to_dict(),
                'bus': bus.to_dict() if bus else None,
            })
        result.append(entry)
    return jsonify({'children': result})
