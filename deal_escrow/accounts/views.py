from rest_framework_simplejwt import views as jwt_views, authentication
from rest_framework import generics, permissions
from drf_yasg.utils import swagger_auto_schema

from . import serializers as my_serializers


class CustomTokenObtainPairView(jwt_views.TokenObtainPairView):
    serializer_class = my_serializers.CustomTokenObtainPairSerializer


class UserProfileRetrieveUpdateAPIView(generics.RetrieveUpdateAPIView):
    """
    The authenticated user's own profile.

    Read-only extras tell the client whether the user mediates disputes,
    can be paid out and how many deals are still open.
    """
    serializer_class = my_serializers.UserProfileSerializer
    authentication_classes = [authentication.JWTAuthentication]
    permission_classes = [permissions.IsAuthenticated]
    http_method_names = ['get', 'patch', 'head', 'options']

    def get_object(self):
        return self.request.user

    @swagger_auto_schema(operation_summary="Current user's profile and escrow readiness")
    def get(self, request, *args, **kwargs):
        return super().get(request, *args, **kwargs)

    @swagger_auto_schema(operation_summary="Update name, phone number or country")
    def patch(self, request, *args, **kwargs):
        return super().patch(request, *args, **kwargs)
