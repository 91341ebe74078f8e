import logging
import secrets

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from web3 import Web3

from cardify.models import Profile, db

logger = logging.getLogger(__name__)

users = Blueprint('users', __name__, url_prefix='/api/users')


@users.route('/register', methods=['POST'])
def register_user():
    """Register a new user"""
    try:
        data = request.get_json(silent=True) or {}

        # Validate required fields
        if not all(key in data for key in ['username', 'email', 'password']):
            return jsonify({"error": "Missing required fields"}), 400

        wallet_address = data.get('wallet_address')
        if wallet_address and not Web3.is_address(wallet_address):
            return jsonify({"error": "Invalid wallet address"}), 400

        # Check if username or email already exists
        if Profile.query.filter_by(username=data['username']).first():
            return jsonify({"error": "Username already exists"}), 400

        if Profile.query.filter_by(email=data['email']).first():
            return jsonify({"error": "Email already exists"}), 400

        profile = Profile(
            username=data['username'],
            email=data['email'],
            wallet_address=wallet_address.lower() if wallet_address else None,
            credits=current_app.config['DEFAULT_CREDITS'],
            api_token=secrets.token_urlsafe(32),
        )
        profile.set_password(data['password'])

        db.session.add(profile)
        db.session.commit()

        return jsonify({
            "message": "User registered successfully",
            "user_id": profile.id,
            "token": profile.api_token,
        }), 201
    except Exception as e:
        logger.error(f"Error registering user: {e}")
        db.session.rollback()
        return jsonify({"error": str(e)}), 500


@users.route('/login', methods=['POST'])
def login():
    """Login user and return the bearer token"""
    try:
        data = request.get_json(silent=True) or {}

        if not all(key in data for key in ['username', 'password']):
            return jsonify({"error": "Missing username or password"}), 400

        profile = Profile.query.filter_by(username=data['username']).first()

        if profile and profile.check_password(data['password']):
            login_user(profile)
            return jsonify({"message": "Login successful", "user": profile.to_dict(),
                            "token": profile.api_token}), 200
        else:
            return jsonify({"error": "Invalid username or password"}), 401
    except Exception as e:
        logger.error(f"Error logging in: {e}")
        return jsonify({"error": str(e)}), 500


@users.route('/me', methods=['GET'])
@login_required
def get_profile():
    """Get the caller's profile and credit balance"""
    return jsonify({"user": current_user.to_dict()}), 200


@users.route('/me', methods=['PUT'])
@login_required
def update_profile():
    """Update the caller's email, wallet address or password"""
    try:
        data = request.get_json(silent=True) or {}

        if 'email' in data and data['email'] != current_user.email:
            if Profile.query.filter_by(email=data['email']).first():
                return jsonify({"error": "Email already exists"}), 400
            current_user.email = data['email']

        if 'wallet_address' in data:
            wallet_address = data['wallet_address']
            if wallet_address and not Web3.is_address(wallet_address):
                return jsonify({"error": "Invalid wallet address"}), 400
            current_user.wallet_address = wallet_address.lower() if wallet_address else None

        if 'password' in data:
            current_user.set_password(data['password'])

        db.session.commit()

        return jsonify({"message": "Profile updated successfully", "user": current_user.to_dict()}), 200
    except Exception as e:
        logger.error(f"Error updating profile: {e}")
        db.session.rollback()
        return jsonify({"error": str(e)}), 500


@users.route('/logout', methods=['POST'])
@login_required
def logout():
    """Logout user"""
    logout_user()
    return jsonify({"message": "Logout successful"}), 200
